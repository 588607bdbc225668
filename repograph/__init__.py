"""
Repograph

Derived-property propagation for a content repository: keeps denormalized
filter and sort fields (``__licenses``, ``__hits``, ...) consistent across
the DigitalEntity -> Entity -> Compilation/Profile reference graph.

Quick Start:
    from repograph import Repository, DocumentKind

    repo = Repository()  # uses ~/.repograph/
    repo.startup()       # backfill, decay timer, search index
    repo.save(DocumentKind.ENTITY, entity, actor="alice")

CLI Usage:
    repograph reconcile --full
    repograph --json stats

Environment Variables:
    REPOGRAPH_STORE_PATH      - Override default store location
    REPOGRAPH_SEARCH_URL      - Search service base URL
    REPOGRAPH_SEARCH_API_KEY  - Bearer token for the search service
"""

from .api import Repository
from .errors import MalformedReferenceError, RepographError, SearchServiceError
from .hooks import AFTER_SAVE, ON_DELETE, HookManager
from .resolver import Resolver
from .types import DocumentKind

__version__ = "0.1.0"
__all__ = [
    "Repository",
    "Resolver",
    "HookManager",
    "DocumentKind",
    "AFTER_SAVE",
    "ON_DELETE",
    "RepographError",
    "MalformedReferenceError",
    "SearchServiceError",
]
