import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./petchat.db")

# Security - CRITICAL: No default secret key in production
SECRET_KEY = os.getenv("SECRET_KEY")
if not SECRET_KEY:
    import warnings

    warnings.warn(
        "SECRET_KEY not set! Using insecure default - DO NOT USE IN PRODUCTION", RuntimeWarning, stacklevel=2
    )
    SECRET_KEY = "INSECURE-DEV-KEY-CHANGE-IN-PRODUCTION"  # noqa: S105 - Dev fallback only

JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "1440"))

# Frontend base URL (used for CORS defaults)
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")

# Temporary chat
# Pending invitations older than this are withdrawn by the sweeper
CHAT_INVITATION_TTL_SECONDS = int(os.getenv("CHAT_INVITATION_TTL_SECONDS", "600"))
CHAT_SWEEP_INTERVAL_SECONDS = int(os.getenv("CHAT_SWEEP_INTERVAL_SECONDS", "60"))
# Only the most recent messages are kept in memory per room
CHAT_MAX_MESSAGES_PER_ROOM = int(os.getenv("CHAT_MAX_MESSAGES_PER_ROOM", "50"))
CHAT_MAX_MESSAGE_LENGTH = int(os.getenv("CHAT_MAX_MESSAGE_LENGTH", "2000"))

# Appointment statuses that allow staff and client to chat
CHAT_ELIGIBLE_STATUSES = ("scheduled", "in_progress", "completed")

# Per-user rate limits for chat commands
CHAT_START_RATE_LIMIT = int(os.getenv("CHAT_START_RATE_LIMIT", "10"))
CHAT_START_RATE_WINDOW_SECONDS = int(os.getenv("CHAT_START_RATE_WINDOW_SECONDS", "60"))
CHAT_MESSAGE_RATE_LIMIT = int(os.getenv("CHAT_MESSAGE_RATE_LIMIT", "60"))
CHAT_MESSAGE_RATE_WINDOW_SECONDS = int(os.getenv("CHAT_MESSAGE_RATE_WINDOW_SECONDS", "60"))

# Client-side endpoints (used by petchat.chat_client)
CHAT_API_URL = os.getenv("CHAT_API_URL", "http://localhost:8000")
CHAT_WS_URL = os.getenv("CHAT_WS_URL", "ws://localhost:8000/ws/chat")
