"""
Utility helpers for tagsync.
"""

from __future__ import annotations

from .timeutils import as_utc, utcnow

__all__ = ["as_utc", "utcnow"]
