"""
Chat Domain - appointment-scoped temporary chat

Staff and clients who share an appointment can open a two-party room over
the /ws/chat socket. Rooms, invitations and messages are held in memory by
the ChatCoordinator and disappear when both parties leave.

Modules:
- sessions.py     Room, participant, message and invitation records
- presence.py     User id -> live connection directory
- eligibility.py  Who may chat with whom (appointments table)
- coordinator.py  Room lifecycle, invitation handshake, message relay
- service.py      REST directory queries (available users, can-chat)
- router.py       REST endpoints and the WebSocket transport
"""
