"""
tagsync - Tag taxonomy and asynchronous search indexing.

Maintains a canonical/synonym tag graph shared by many kinds of content
entities and keeps an external full-text search index eventually consistent
with it through a durable, priority-ordered, deduplicating queue.
"""

from __future__ import annotations

__version__ = "0.1.0"
__author__ = "tagsync"
__email__ = "noreply@tagsync.dev"
__license__ = "AGPL-3.0-or-later"

__all__ = ["__version__", "__author__", "__email__", "__license__"]
