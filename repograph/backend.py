"""
Pluggable storage backend factory.

Creates the document store and search client from configuration. The local
backend uses SQLite. External backends (a document database server, say)
register via the ``repograph.backends`` entry point group.

External backend packages provide a factory function::

    def create_stores(config: StoreConfig) -> StoreBundle:
        ...

and register it in their pyproject.toml::

    [project.entry-points."repograph.backends"]
    my-backend = "my_package.backend:create_stores"
"""

import logging
from typing import NamedTuple

from .config import StoreConfig
from .protocol import DocumentStoreProtocol, SearchServiceProtocol

logger = logging.getLogger(__name__)


class StoreBundle(NamedTuple):
    """Collection of backends returned by the factory."""
    doc_store: DocumentStoreProtocol
    search_service: SearchServiceProtocol


def create_search_service(config: StoreConfig) -> SearchServiceProtocol:
    """HTTP search client if a search URL is configured, else the null service."""
    from .search_client import HttpSearchService, NullSearchService

    if not config.search.url:
        logger.debug("No search service configured; indexing disabled")
        return NullSearchService()
    return HttpSearchService(
        config.search.url,
        config.search.api_key or None,
        timeout=config.search.timeout,
    )


def create_stores(config: StoreConfig) -> StoreBundle:
    """
    Create backends from configuration.

    For ``backend = "local"`` (default), creates the SQLite DocumentStore.
    For other values, loads the backend via the ``repograph.backends``
    entry point group.
    """
    if config.backend == "local":
        return _create_local_stores(config)
    return _load_backend(config.backend, config)


def _create_local_stores(config: StoreConfig) -> StoreBundle:
    """Create the default local backends."""
    from .document_store import DocumentStore

    return StoreBundle(
        doc_store=DocumentStore(config.database_path),
        search_service=create_search_service(config),
    )


def _load_backend(name: str, config: StoreConfig) -> StoreBundle:
    """Load a backend by entry point name."""
    from importlib.metadata import entry_points

    eps = entry_points(group="repograph.backends")
    for ep in eps:
        if ep.name == name:
            factory = ep.load()
            return factory(config)

    available = [ep.name for ep in eps]
    if available:
        raise ValueError(
            f"Unknown backend: {name!r}. Available: {available}"
        )
    raise ValueError(
        f"Unknown backend: {name!r}. No backends registered."
    )
