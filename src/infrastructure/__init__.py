"""
Infrastructure Components

Foundational services shared by every venue integration:
- networking: clock, signer, REST caller, WebSocket carrier, framed TCP client
- logging: structured logging with async backends
- error_handling: retry composition and error storm suppression
- exceptions: venue and system exception hierarchy
"""
