"""
Asynchronous propagation of entity changes to the search index.
"""

from tagsync.services.indexing.adapter import ElasticsearchAdapter, IndexAdapter
from tagsync.services.indexing.dispatcher import DispatchOutcome, IndexDispatcher
from tagsync.services.indexing.documents import (
    DocumentSource,
    DocumentSourceRegistry,
    SQLAlchemyDocumentSource,
)
from tagsync.services.indexing.queue import IndexQueue
from tagsync.services.indexing.reindex import ReindexResult, ReindexService
from tagsync.services.indexing.shutdown_handler import (
    ShutdownHandler,
    get_shutdown_handler,
)

__all__ = [
    "DispatchOutcome",
    "DocumentSource",
    "DocumentSourceRegistry",
    "ElasticsearchAdapter",
    "IndexAdapter",
    "IndexDispatcher",
    "IndexQueue",
    "ReindexResult",
    "ReindexService",
    "SQLAlchemyDocumentSource",
    "ShutdownHandler",
    "get_shutdown_handler",
]
