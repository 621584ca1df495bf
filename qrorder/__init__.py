"""
                QR Table Ordering Engine

Session-scoped cart and order-pricing backend for restaurant QR-code
ordering, with a write-through cache and dual (legacy/current) API shapes.

Author: Khalil Bannouri
Version: 1.0.0
License: MIT
"""

__version__ = "1.0.0"
__author__ = "Khalil Bannouri"
