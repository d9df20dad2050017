"""
Collection Service - Cycles and Status

Responsibilities:
- Run non-overlapping collection cycles on a fixed interval
- Commit each meter's readings atomically
- Report live and historical status over HTTP
"""

from .service import CollectionService

__all__ = ["CollectionService"]
