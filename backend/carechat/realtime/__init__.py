"""WebSocket transport: rooms, per-connection sessions and event dispatch.

Services:
    - RoomRegistry: conversation id -> joined connections.
    - SessionManager: authenticates connections, registers presence and
      routes inbound events to MessageService.
"""
