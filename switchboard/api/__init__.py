"""
WebSocket and HTTP surface of the signaling service.
"""
