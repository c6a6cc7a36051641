"""
Diff/merge resolver — turns (local, remote) inputs into create/update/delete sets.

Remote is authoritative for the synced fields. Local events that never had an
external id are invisible here and therefore always preserved.
"""

import logging
from collections.abc import Iterable
from collections.abc import Mapping
from dataclasses import dataclass
from dataclasses import field
from dataclasses import replace

from graph_calendar_sync.models import LocalEvent
from graph_calendar_sync.models import RemoteEvent
from graph_calendar_sync.models import SyncMode
from graph_calendar_sync.sync.utils import differing_fields
from graph_calendar_sync.sync.utils import local_fields_from_remote

logger = logging.getLogger(__name__)


@dataclass
class ChangeSet:
    """Operations to apply to the local store, in apply order."""

    creates: list[LocalEvent] = field(default_factory=list)
    updates: list[LocalEvent] = field(default_factory=list)
    deletes: list[LocalEvent] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.creates or self.updates or self.deletes)

    def __len__(self) -> int:
        return len(self.creates) + len(self.updates) + len(self.deletes)


def new_local_event(remote: RemoteEvent) -> LocalEvent:
    """Build the LocalEvent a remote record should be created as."""
    return LocalEvent(external_id=remote.external_id, **local_fields_from_remote(remote))


def overwrite_from_remote(local: LocalEvent, remote: RemoteEvent) -> LocalEvent:
    """Copy the synced fields of ``remote`` over ``local``.

    The local id and every field outside the synced set are kept verbatim.
    """
    return replace(local, **local_fields_from_remote(remote))


def _last_by_external_id(remote_events: Iterable[RemoteEvent]) -> dict[str, RemoteEvent]:
    collapsed: dict[str, RemoteEvent] = {}
    for remote in remote_events:
        # Re-insert so the dict order follows the last occurrence.
        collapsed.pop(remote.external_id, None)
        collapsed[remote.external_id] = remote
    return collapsed


def _upsert(changes: ChangeSet, local: LocalEvent | None, remote: RemoteEvent) -> None:
    if local is None:
        changes.creates.append(new_local_event(remote))
        return
    diff = differing_fields(local, remote)
    if diff:
        logger.debug(f"Event {remote.external_id} changed: {', '.join(diff)}")
        changes.updates.append(overwrite_from_remote(local, remote))


def resolve_full(
    local_events: Iterable[LocalEvent], remote_events: Iterable[RemoteEvent]
) -> ChangeSet:
    """Reconcile the complete remote window against every synced local event.

    Any synced local event whose external id is missing from the remote set
    was removed upstream and is scheduled for deletion.
    """
    local_by_external = {e.external_id: e for e in local_events if e.external_id is not None}
    remote_by_external = _last_by_external_id(r for r in remote_events if not r.deleted)

    changes = ChangeSet()
    for external_id, remote in remote_by_external.items():
        _upsert(changes, local_by_external.get(external_id), remote)

    for external_id, local in local_by_external.items():
        if external_id not in remote_by_external:
            changes.deletes.append(local)

    return changes


def resolve_delta(
    local_lookup: Mapping[str, LocalEvent], page: Iterable[RemoteEvent]
) -> ChangeSet:
    """Reconcile one delta page against the local records it mentions.

    Absence from the page means "unchanged"; only explicit deletion markers
    remove events. Applying the same page twice is a no-op the second time.
    """
    changes = ChangeSet()
    for external_id, remote in _last_by_external_id(page).items():
        local = local_lookup.get(external_id)
        if remote.deleted:
            if local is not None:
                changes.deletes.append(local)
            else:
                logger.debug(f"Deletion for unknown event {external_id}, ignoring")
            continue
        _upsert(changes, local, remote)
    return changes


def resolve(local, remote: Iterable[RemoteEvent], mode: SyncMode) -> ChangeSet:
    """Dispatch to the full or delta resolver.

    In full mode ``local`` is an iterable of LocalEvents; in differential mode
    it is a mapping of external id to LocalEvent for the page's records.
    """
    if mode is SyncMode.FULL:
        return resolve_full(local, remote)
    return resolve_delta(local, remote)
