"""
Batch Kernel -- infrastructure shared by the chunk engine and its jobs.

Provides:
- Structured JSON logging with run-scoped context
- Typed exception hierarchy with machine-readable codes
- Injectable clock
- SQLAlchemy declarative base, engine and session scope
- Deterministic hashing of parameter payloads
"""

__version__ = "0.1.0"
