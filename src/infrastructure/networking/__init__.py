"""
Networking Infrastructure

- http: venue clock, request signer, REST caller and shared session state
- websocket: WebSocket carrier with subscription replay and stream routing
- tcp: length-prefixed framed TCP session for broker gateways
"""
