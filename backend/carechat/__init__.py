"""CareChat backend: real-time conversations for the healthcare job marketplace."""
