"""Do-not-inventory rule deciding which VMs are reported."""

from typing import Dict

from .models import VMRecord


def is_reportable(record: VMRecord) -> bool:
    """Return True unless the VM carries the do-not-inventory flag."""
    return not bool(record.do_not_inventory)


def reportable_only(snapshot: Dict[str, VMRecord]) -> Dict[str, VMRecord]:
    """Return the subset of a snapshot that may be reported."""
    return {vm_uuid: record for vm_uuid, record in snapshot.items() if is_reportable(record)}
