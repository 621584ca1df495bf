"""
                        Services Module

Business logic of the QR ordering engine.

Services:
    - pricing: Fixed-point line pricing
    - sessions: Session identity resolution, migration and expiry
    - compat: Legacy request shape selection
    - cache: Memory/Redis backends behind a coherence layer
    - catalog: Cached menu reads
    - cart: Session-scoped cart store
    - orders: Cart → order assembly and order projections
    - engine: Wiring of all of the above
"""

from qrorder.services.engine import OrderingEngine

__all__ = ["OrderingEngine"]
