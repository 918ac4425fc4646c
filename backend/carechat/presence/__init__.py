"""In-memory presence tracking for connected users."""
