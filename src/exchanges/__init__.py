"""
Venue Module

Unified trading surface over heterogeneous venues.

Architecture:
- structs: unified data model (instruments, order snapshots, deals, series)
- core: venue-independent machinery (registry, order book, balance ledger,
  order engine, market/trader sessions, venue hub)
- integrations: venue-specific adapters (Binance spot over REST/WebSocket,
  IBKR over the framed TCP gateway protocol)

Integrations are imported explicitly; importing this package has no side
effects.
"""
