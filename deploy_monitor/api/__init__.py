"""Deploy Monitor HTTP and WebSocket API."""
