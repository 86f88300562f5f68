"""Client side: peer negotiation, signaling client and room orchestration."""
