"""Real-time notification fan-out over WebSocket rooms."""
