"""In-app notifications raised by the messaging core."""
