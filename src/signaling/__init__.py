"""WebRTC signaling server: rooms, relay and connection gateway."""
