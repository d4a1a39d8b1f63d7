"""Chat router - REST lookups and the WebSocket transport for temporary chat"""

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect
from pydantic import ValidationError
from sqlalchemy.orm import Session
from starlette.requests import HTTPConnection

from ...auth import authenticate_token, get_current_user
from ...database import SessionLocal, get_db
from ...models import User
from . import errors
from .coordinator import ChatCoordinator
from .eligibility import user_ref
from .errors import ChatError
from .presence import QueuedConnection
from .schemas import (
    AppointmentContextResponse,
    AvailableUserResponse,
    CanChatRequest,
    CanChatResponse,
    ChatFrame,
    RoomInfoResponse,
)
from .service import ChatDirectoryService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/chat", tags=["Chat"])
ws_router = APIRouter(tags=["Chat"])

# Close code sent when the socket token is missing or invalid
WS_CLOSE_UNAUTHORIZED = 4401


def get_chat_coordinator(connection: HTTPConnection) -> ChatCoordinator:
    """The process-wide coordinator, stored on the application state"""
    return connection.app.state.chat_coordinator


def get_chat_service(db: Session = Depends(get_db)) -> ChatDirectoryService:
    """Dependency injection for ChatDirectoryService"""
    return ChatDirectoryService(db)


# ============================================================================
# REST
# ============================================================================


@router.get("/available-users", response_model=list[AvailableUserResponse])
async def get_available_users(
    current_user: User = Depends(get_current_user),
    service: ChatDirectoryService = Depends(get_chat_service),
    coordinator: ChatCoordinator = Depends(get_chat_coordinator),
):
    """Users the current user shares an appointment with"""
    return service.get_available_users(current_user, coordinator.presence)


@router.get("/appointments/{user_id}", response_model=list[AppointmentContextResponse])
async def get_shared_appointments(
    user_id: str,
    current_user: User = Depends(get_current_user),
    service: ChatDirectoryService = Depends(get_chat_service),
):
    """Recent appointments shared with another user, for chat context"""
    return service.get_shared_appointments(current_user, user_id)


@router.post("/can-chat/{target_user_id}", response_model=CanChatResponse)
async def can_chat(
    target_user_id: str,
    data: Optional[CanChatRequest] = None,
    current_user: User = Depends(get_current_user),
    service: ChatDirectoryService = Depends(get_chat_service),
):
    """Check whether the current user may start a chat with the target"""
    appointment_id = data.appointmentId if data else None
    return service.can_chat(
        current_user, target_user_id, str(appointment_id) if appointment_id is not None else None
    )


@router.get("/rooms/{room_id}", response_model=RoomInfoResponse)
async def get_room_info(
    room_id: str,
    current_user: User = Depends(get_current_user),
    coordinator: ChatCoordinator = Depends(get_chat_coordinator),
):
    """Participants and appointment context of a live room"""
    try:
        return coordinator.room_info(str(current_user.id), room_id)
    except ChatError as e:
        status_code = 404 if e.code == errors.NOT_FOUND else 403
        raise HTTPException(status_code=status_code, detail=e.message) from e


# ============================================================================
# WEBSOCKET
# ============================================================================


def _authenticate_socket(token: Optional[str]) -> Optional[User]:
    db = SessionLocal()
    try:
        return authenticate_token(token, db)
    finally:
        db.close()


@ws_router.websocket("/ws/chat")
async def chat_socket(
    websocket: WebSocket,
    token: Optional[str] = Query(None),
    coordinator: ChatCoordinator = Depends(get_chat_coordinator),
):
    """
    Temporary chat transport.

    Frames are JSON objects ``{"event": ..., "data": {...}}`` in both directions.
    Authenticate with ``?token=<access token>``.
    """
    user = await asyncio.to_thread(_authenticate_socket, token)
    # Accept before closing, a close during the handshake reaches clients as a bare HTTP 403
    await websocket.accept()
    if user is None:
        logger.warning("🚫 Chat socket rejected: missing or invalid token")
        await websocket.close(code=WS_CLOSE_UNAUTHORIZED)
        return

    current = user_ref(user)
    connection = QueuedConnection(
        websocket.send_json,
        label=f"user:{current.id}",
        close_socket=lambda code: websocket.close(code=code),
    )
    connection.start()
    connection.send("connected", {"user": current.to_dict()})
    coordinator.connect(current, connection)

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                frame = ChatFrame.model_validate_json(raw)
            except ValidationError:
                logger.warning(f"⚠️ Malformed chat frame from user {current.id}")
                connection.send(
                    errors.CHAT_ERROR_EVENT,
                    {"message": "Malformed message frame", "code": errors.INVALID_REQUEST},
                )
                continue
            await coordinator.handle(current, connection, frame.event, frame.data)
    except WebSocketDisconnect:
        pass
    finally:
        coordinator.disconnect(current, connection)
        await connection.close()
