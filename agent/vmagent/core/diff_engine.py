"""Change detection between the reported cache and a fresh snapshot."""
from __future__ import annotations

from datetime import datetime
from typing import Callable, List, Mapping, Optional

from .inclusion import is_reportable
from .models import ChangeEvent, ChangeKind, VMRecord


def diff_snapshots(
    previous: Mapping[str, VMRecord],
    snapshot: Mapping[str, VMRecord],
    include: Callable[[VMRecord], bool] = is_reportable,
    *,
    now: Optional[datetime] = None,
) -> List[ChangeEvent]:
    """Compare the last reported records with a fresh enumeration.

    Records are matched on uuid only. A reportable record missing from
    ``previous`` is ``created``; one that differs in any field, nested metadata
    and snapshot lists included, is ``updated``. A uuid in ``previous`` that is
    gone from ``snapshot`` or is now rejected by ``include`` is ``deleted`` and
    carries a terminal destroyed record. Excluded VMs never present in
    ``previous`` produce nothing in either direction.

    Events come back ordered by uuid so a cycle dispatches deterministically.
    """

    events: List[ChangeEvent] = []

    for vm_uuid in sorted(snapshot):
        record = snapshot[vm_uuid]
        if not include(record):
            continue

        cached: Optional[VMRecord] = previous.get(vm_uuid)
        if cached is None:
            events.append(ChangeEvent(ChangeKind.CREATED, vm_uuid, record))
        elif cached != record:
            events.append(ChangeEvent(ChangeKind.UPDATED, vm_uuid, record))

    for vm_uuid in sorted(previous):
        current = snapshot.get(vm_uuid)
        if current is None or not include(current):
            events.append(
                ChangeEvent(
                    ChangeKind.DELETED,
                    vm_uuid,
                    VMRecord.destroyed(vm_uuid, now),
                    excluded=current is not None,
                )
            )

    events.sort(key=lambda event: event.uuid)
    return events
