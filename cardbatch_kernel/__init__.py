"""
Card Batch Kernel

Leaf layer of the card-account batch engine:
- Fixed-point decimal arithmetic with COBOL field semantics
- Fixed-width record codec (zoned, packed, alphanumeric, date fields)
- SQLAlchemy base classes and engine/session management
- Structured JSON logging and the typed exception hierarchy
"""

__version__ = "0.1.0"
