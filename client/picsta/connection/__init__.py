"""Socket.IO connection management and room membership."""
