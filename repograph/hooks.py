"""
Lifecycle hook registry.

The write path fires hooks after it persists a document; subsystems
interested in a (kind, event) pair register callbacks here at start-up.
A registry is constructed explicitly and handed to the write path, so tests
can build their own instead of sharing process-wide state.

Callback signature::

    def callback(document: dict, actor: Optional[str]) -> Optional[dict]

A callback receives its own deep copy of the document. Returning a dict
replaces the document seen by the next callback; returning None keeps it.
"""

import copy
import logging
from typing import Callable, Optional

from .types import DocumentKind

logger = logging.getLogger(__name__)

AFTER_SAVE = "afterSave"
ON_DELETE = "onDelete"
ON_RESOLVE = "onResolve"
ON_TRANSFORM = "onTransform"

EVENTS = (AFTER_SAVE, ON_DELETE, ON_RESOLVE, ON_TRANSFORM)

HookCallback = Callable[[dict, Optional[str]], Optional[dict]]


class HookManager:
    """Registry mapping (kind, event) to callbacks, run in registration order."""

    def __init__(self):
        self._hooks: dict[tuple[DocumentKind, str], list[HookCallback]] = {}

    @staticmethod
    def _key(kind: DocumentKind, event: str) -> tuple[DocumentKind, str]:
        if event not in EVENTS:
            raise ValueError(f"Unknown hook event: {event!r}")
        return DocumentKind(kind), event

    def add_hook(self, kind: DocumentKind, event: str, callback: HookCallback) -> None:
        """Register a callback for a document kind and event."""
        self._hooks.setdefault(self._key(kind, event), []).append(callback)

    def hooks_for(self, kind: DocumentKind, event: str) -> list[HookCallback]:
        """Callbacks registered for a kind and event, in run order."""
        return list(self._hooks.get(self._key(kind, event), ()))

    def fire(
        self,
        kind: DocumentKind,
        event: str,
        document: dict,
        actor: Optional[str] = None,
    ) -> dict:
        """
        Run the callbacks for (kind, event) synchronously.

        A failing callback is logged and skipped; the remaining callbacks
        still run and the triggering write is never undone.

        Returns:
            The document after any replacements made by callbacks
        """
        current = document
        for callback in self.hooks_for(kind, event):
            try:
                result = callback(copy.deepcopy(current), actor)
            except Exception as e:
                name = getattr(callback, "__qualname__", repr(callback))
                logger.warning("%s hook %s for %s failed: %s", event, name, DocumentKind(kind).value, e)
                logger.debug("Hook failure", exc_info=True)
                continue
            if result is not None:
                current = result
        return current
