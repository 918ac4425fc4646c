"""Conversations, messages and the sent -> delivered -> read state machine.

Services:
    - MessageStore: SQL over the conversations and messages tables.
    - MessageService: transactional operations used by REST and WebSocket
      handlers.
"""
