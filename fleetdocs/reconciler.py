"""
State reconciliation for stored documents.

Reconciliation re-derives the lifecycle state of every document against one
instant and reports only the documents whose stored state is out of date. It
never touches storage; the caller applies the changeset.
"""

from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional, Protocol

from fleetdocs.expiry import DateLike, DocumentState, classify


class Classifiable(Protocol):
    """Anything carrying the fields needed to classify a document."""
    id: Any
    expiry_date: Any
    state: Optional[DocumentState]

    @property
    def effective_alert_window_days(self) -> int:
        ...


@dataclass(frozen=True)
class StateChange:
    """A single state transition for one document."""
    id: Any
    old_state: Optional[DocumentState]
    new_state: DocumentState


@dataclass
class Changeset:
    """Documents whose stored state diverges from the computed one."""
    to_update: List[StateChange] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.to_update)

    def __bool__(self) -> bool:
        return bool(self.to_update)

    @property
    def ids(self) -> List[Any]:
        return [change.id for change in self.to_update]

    def apply(self, documents: Iterable[Classifiable]) -> None:
        """Write the new states onto in-memory documents."""
        new_states = {change.id: change.new_state for change in self.to_update}
        for doc in documents:
            if doc.id in new_states:
                doc.state = new_states[doc.id]


def reconcile(documents: Iterable[Classifiable], now: DateLike) -> Changeset:
    """Compute the state changes needed for a snapshot of documents.

    Args:
        documents: Documents with their stored state
        now: Instant to classify against

    Returns:
        Changeset listing (id, old_state, new_state) for each stale document.
        A document with no stored state is always included.
    """
    changeset = Changeset()
    for doc in documents:
        computed = classify(doc.expiry_date, doc.effective_alert_window_days, now)
        stored = DocumentState(doc.state) if doc.state is not None else None
        if stored != computed:
            changeset.to_update.append(StateChange(doc.id, stored, computed))
    return changeset
