"""
In-process change listener registry used by the store backends.

Backends report every committed change as a DocumentChange. The registry
turns those into per-listener ChangeEvents: a document that matches a
listener's where clauses only after the change is "added", before and
after is "modified", only before is "removed".
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from .base import ChangeCallback, ChangeEvent, ChangeType, QueryPredicates, StoredDocument
from .filters import filter_documents

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DocumentChange:
    """A committed change to one document."""

    collection: str
    doc_id: str
    before: Optional[StoredDocument]
    after: Optional[StoredDocument]


@dataclass
class _Listener:
    listener_id: int
    collection: str
    predicates: QueryPredicates
    on_change: ChangeCallback


class ListenerRegistry:
    """Tracks listeners and dispatches committed changes to them."""

    def __init__(self) -> None:
        self._listeners: Dict[int, _Listener] = {}
        self._ids = itertools.count(1)

    def __len__(self) -> int:
        return len(self._listeners)

    def add(
        self,
        collection: str,
        predicates: QueryPredicates,
        on_change: ChangeCallback,
    ) -> Callable[[], None]:
        """Register a listener.

        Returns:
            Detach callable; calling it more than once is a no-op
        """
        listener_id = next(self._ids)
        self._listeners[listener_id] = _Listener(listener_id, collection, predicates, on_change)
        logger.debug(
            "Listener attached",
            extra={"listener_id": listener_id, "collection": collection},
        )

        def detach() -> None:
            if self._listeners.pop(listener_id, None) is not None:
                logger.debug(
                    "Listener detached",
                    extra={"listener_id": listener_id, "collection": collection},
                )

        return detach

    def dispatch(self, changes: List[DocumentChange]) -> None:
        """Deliver committed changes to matching listeners.

        Listener failures are logged and never propagate into the commit.
        """
        if not changes or not self._listeners:
            return

        for listener in list(self._listeners.values()):
            events = []
            for change in changes:
                if change.collection != listener.collection:
                    continue
                event = self._to_event(change, listener.predicates)
                if event is not None:
                    events.append(event)

            if not events:
                continue
            try:
                listener.on_change(events)
            except Exception as e:
                logger.warning(
                    f"Change listener failed: {e}",
                    extra={
                        "listener_id": listener.listener_id,
                        "collection": listener.collection,
                    },
                )

    @staticmethod
    def _to_event(change: DocumentChange, predicates: QueryPredicates) -> Optional[ChangeEvent]:
        def matched(doc: Optional[StoredDocument]) -> bool:
            return doc is not None and bool(filter_documents([doc], predicates.where))

        before, after = matched(change.before), matched(change.after)
        if after and not before:
            return ChangeEvent(ChangeType.ADDED, change.after)  # type: ignore[arg-type]
        if after and before:
            return ChangeEvent(ChangeType.MODIFIED, change.after)  # type: ignore[arg-type]
        if before:
            return ChangeEvent(ChangeType.REMOVED, change.before)  # type: ignore[arg-type]
        return None
