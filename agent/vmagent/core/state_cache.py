"""In-memory record of what was last delivered to the inventory API."""

from typing import Dict, Iterator, List, Mapping, Optional

from .models import VMRecord


class StateCache:
    """Last successfully reported record per VM uuid.

    Only the reconciliation loop writes to the cache. Readers get copies so
    they never observe a record that is mutated afterwards.
    """

    def __init__(self) -> None:
        self._records: Dict[str, VMRecord] = {}

    def replace_all(self, records: Mapping[str, VMRecord]) -> None:
        """Adopt a full snapshot, discarding everything previously cached."""
        self._records = {vm_uuid: record.model_copy(deep=True) for vm_uuid, record in records.items()}

    def put(self, record: VMRecord) -> None:
        """Add or replace the cached record for a VM."""
        self._records[record.uuid] = record.model_copy(deep=True)

    def remove(self, vm_uuid: str) -> Optional[VMRecord]:
        """Drop a VM from the cache, returning the removed record."""
        return self._records.pop(vm_uuid, None)

    def get(self, vm_uuid: str) -> Optional[VMRecord]:
        record = self._records.get(vm_uuid)
        return record.model_copy(deep=True) if record is not None else None

    def view(self) -> Mapping[str, VMRecord]:
        """Return a shallow copy suitable for diffing."""
        return dict(self._records)

    def records(self) -> List[VMRecord]:
        """Return cached records sorted by uuid."""
        return [self._records[vm_uuid].model_copy(deep=True) for vm_uuid in sorted(self._records)]

    def clear(self) -> None:
        self._records.clear()

    def __contains__(self, vm_uuid: object) -> bool:
        return vm_uuid in self._records

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._records))
