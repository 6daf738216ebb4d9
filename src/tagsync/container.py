"""
Dependency Injection Container for tagsync.

Wires repositories, the tag graph service, the index queue, the search
adapter and the dispatcher from one ``Settings`` object.

- Repository factories return new instances each call (transient)
- Engine-bound singletons (queue, adapter, document sources) are cached via
  ``@cached_property`` and cleared by ``reset()``

Usage
-----
    >>> from tagsync.container import container
    >>> graph = container.create_tag_graph_service()
    >>> async with container.create_index_transaction() as tx:
    ...     tx.apply(await graph.merge_tags(tx.session, hp_id, harry_potter_id))

Document sources
----------------
Applications embedding tagsync register a ``DocumentSource`` per content
type with ``container.document_sources.register(...)``. Installed packages can
also advertise factories under the ``tagsync.document_sources`` entry point
group; each factory is called with no arguments and returns a source.
"""

from __future__ import annotations

import logging
from functools import cached_property
from importlib.metadata import entry_points
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tagsync.config.database import DatabaseManager
from tagsync.config.settings import Settings, get_settings
from tagsync.models.entity_ref import EntityRef
from tagsync.models.enums import TagType
from tagsync.repositories import (
    IndexQueueRepository,
    TaggingRepository,
    TagOperationLogRepository,
    TagParentRepository,
    TagRepository,
)
from tagsync.services.indexing import (
    DocumentSourceRegistry,
    ElasticsearchAdapter,
    IndexAdapter,
    IndexDispatcher,
    IndexQueue,
    ReindexService,
)
from tagsync.services.tag_graph import TagGraphService
from tagsync.services.tag_normalization import TagNormalizationService
from tagsync.services.taggable import TaggableEntity
from tagsync.services.unit_of_work import IndexTransaction

logger = logging.getLogger(__name__)

DOCUMENT_SOURCE_ENTRY_POINTS = "tagsync.document_sources"


class Container:
    """
    Dependency injection container for tagsync.

    Parameters
    ----------
    config : Settings | None
        Settings to wire from; the process settings when omitted.
    db : DatabaseManager | None
        Database manager; one is built from *config* when omitted.
    """

    def __init__(
        self,
        config: Optional[Settings] = None,
        db: Optional[DatabaseManager] = None,
    ) -> None:
        self._config = config
        self._db = db

    @property
    def settings(self) -> Settings:
        if self._config is None:
            self._config = get_settings()
        return self._config

    @property
    def db(self) -> DatabaseManager:
        if self._db is None:
            self._db = DatabaseManager(self.settings)
        return self._db

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self.db.get_session_factory()

    # -------------------------------------------------------------------------
    # Repository Factory Methods (Transient - new instance per call)
    # -------------------------------------------------------------------------

    def create_tag_repository(self) -> TagRepository:
        return TagRepository()

    def create_tag_parent_repository(self) -> TagParentRepository:
        return TagParentRepository()

    def create_tagging_repository(self) -> TaggingRepository:
        return TaggingRepository()

    def create_index_queue_repository(self) -> IndexQueueRepository:
        return IndexQueueRepository()

    def create_tag_operation_log_repository(self) -> TagOperationLogRepository:
        return TagOperationLogRepository()

    # -------------------------------------------------------------------------
    # Service Factory Methods (Transient - new instance per call)
    # -------------------------------------------------------------------------

    def create_tag_graph_service(self) -> TagGraphService:
        """
        Create a TagGraphService with its repositories and policies wired.

        Returns
        -------
        TagGraphService
            Service honouring ``merge_cascade_parent_edges`` and
            ``enforce_parent_type_rules`` from settings.
        """
        return TagGraphService(
            tag_repo=self.create_tag_repository(),
            parent_repo=self.create_tag_parent_repository(),
            tagging_repo=self.create_tagging_repository(),
            operation_log_repo=self.create_tag_operation_log_repository(),
            normalizer=TagNormalizationService(),
            merge_cascade_parent_edges=self.settings.merge_cascade_parent_edges,
            enforce_parent_type_rules=self.settings.enforce_parent_type_rules,
            delimiter=self.settings.tag_delimiter,
        )

    def create_taggable(
        self, entity: EntityRef, scope: Optional[TagType] = None
    ) -> TaggableEntity:
        return TaggableEntity(
            entity,
            self.create_tag_graph_service(),
            scope=scope,
            delimiter=self.settings.tag_delimiter,
        )

    def create_index_transaction(self) -> IndexTransaction:
        """Open a new transaction boundary that commits index effects."""
        return IndexTransaction(
            self.session_factory, self.create_index_queue_repository()
        )

    def create_reindex_service(self) -> ReindexService:
        return ReindexService(
            self.session_factory,
            self.document_sources,
            page_size=self.settings.reindex_page_size,
        )

    def create_dispatcher(self, workers: Optional[int] = None) -> IndexDispatcher:
        """
        Create an IndexDispatcher over the shared queue and adapter.

        Parameters
        ----------
        workers : Optional[int]
            Worker count override; ``dispatcher_workers`` when omitted.
        """
        s = self.settings
        return IndexDispatcher(
            self.index_queue,
            self.search_adapter,
            self.document_sources,
            self.session_factory,
            batch_size=s.dispatcher_batch_size,
            max_tiers=s.dispatcher_max_tiers,
            workers=workers or s.dispatcher_workers,
            backoff_base=s.dispatcher_backoff_base,
            backoff_max=s.dispatcher_backoff_max,
            idle_interval=s.dispatcher_idle_interval,
        )

    # -------------------------------------------------------------------------
    # Singletons (cached per container)
    # -------------------------------------------------------------------------

    @cached_property
    def index_queue(self) -> IndexQueue:
        return IndexQueue(
            self.session_factory,
            visibility_timeout=self.settings.queue_visibility_timeout,
            repository=self.create_index_queue_repository(),
        )

    @cached_property
    def search_adapter(self) -> IndexAdapter:
        return ElasticsearchAdapter(
            self.settings.search_url,
            index_prefix=self.settings.search_index_prefix,
            timeout=self.settings.search_timeout,
        )

    @cached_property
    def document_sources(self) -> DocumentSourceRegistry:
        """Registry pre-populated from installed entry points."""
        registry = DocumentSourceRegistry()
        for entry_point in entry_points(group=DOCUMENT_SOURCE_ENTRY_POINTS):
            factory = entry_point.load()
            source = factory()
            registry.register(source)
            logger.debug(
                "Registered document source %s from %s",
                source.entity_type,
                entry_point.value,
            )
        return registry

    # -------------------------------------------------------------------------
    # Testing Support
    # -------------------------------------------------------------------------

    def reset(self) -> None:
        """Clear cached singletons so tests can inject replacements."""
        for prop in ("index_queue", "search_adapter", "document_sources"):
            self.__dict__.pop(prop, None)

    async def aclose(self) -> None:
        """Close the adapter (if created) and dispose of the engine."""
        adapter = self.__dict__.get("search_adapter")
        if adapter is not None:
            await adapter.close()
        if self._db is not None:
            await self._db.close()
        # Registered document sources survive; engine-bound objects do not
        for prop in ("index_queue", "search_adapter"):
            self.__dict__.pop(prop, None)


# Global container instance
container = Container()
