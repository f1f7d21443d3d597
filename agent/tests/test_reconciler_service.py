import asyncio
from typing import Dict, List

import pytest

from vmagent.core.config import settings
from vmagent.core.models import AgentPhase, SyncErrorKind, VMRecord
from vmagent.services.reconciler_service import ReconcilerService
from vmagent.services.vmadm_service import SourceUnavailable
from vmagent.services.vmapi_client import SyncAck, SyncRejected, SyncTransient

SERVER_UUID = "44454c4c-3800-1034-8052-b2c04f4d4e31"


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeSource:
    """Hypervisor stand-in whose VMs the test edits between cycles."""

    def __init__(self, *records: VMRecord):
        self.vms: Dict[str, VMRecord] = {record.uuid: record for record in records}
        self.errors: List[Exception] = []
        self.calls = 0

    async def enumerate(self) -> Dict[str, VMRecord]:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return {vm_uuid: record.model_copy(deep=True) for vm_uuid, record in self.vms.items()}

    def update(self, vm_uuid: str, **fields) -> None:
        self.vms[vm_uuid] = self.vms[vm_uuid].model_copy(update=fields)


class FakeVmapi:
    """Inventory API stand-in keeping the remote view of the node."""

    def __init__(self):
        self.remote: Dict[str, VMRecord] = {}
        self.full_sets: List[List[VMRecord]] = []
        self.pushes: List[VMRecord] = []
        self.full_set_errors: List[Exception] = []
        self.read_errors: List[Exception] = []
        self.rejected: set = set()
        self.unavailable: set = set()
        self.calls: List[str] = []
        self.reads = 0

    async def get_server_vms(self, server_uuid, *, stop_event=None):
        self.reads += 1
        self.calls.append("get_server_vms")
        if self.read_errors:
            raise self.read_errors.pop(0)
        return {vm_uuid: record.model_copy(deep=True) for vm_uuid, record in self.remote.items()}

    async def push_full_set(self, server_uuid, records, *, stop_event=None):
        self.calls.append("push_full_set")
        if self.full_set_errors:
            raise self.full_set_errors.pop(0)
        records = list(records)
        rejected = sorted(record.uuid for record in records if record.uuid in self.rejected)
        if rejected:
            raise SyncRejected(f"VMAPI returned 422: invalid VM {rejected[0]}", status_code=422)
        self.full_sets.append(records)
        self.remote = {record.uuid: record for record in records}
        return SyncAck(status_code=200, records=len(records))

    async def push_one(self, record, *, stop_event=None):
        self.pushes.append(record)
        if record.uuid in self.rejected:
            raise SyncRejected("VMAPI returned 409: conflict", status_code=409, vm_uuid=record.uuid)
        if record.uuid in self.unavailable:
            raise SyncTransient("VMAPI returned 503: unavailable", status_code=503, vm_uuid=record.uuid)
        if record.state == "destroyed":
            self.remote.pop(record.uuid, None)
        else:
            self.remote[record.uuid] = record
        return SyncAck(status_code=200, records=1, vm_uuid=record.uuid)

    def pushed(self) -> List[tuple]:
        return [(record.uuid, record.state) for record in self.pushes]


def _vm(vm_uuid: str, **fields) -> VMRecord:
    fields.setdefault("state", "running")
    return VMRecord(uuid=vm_uuid, **fields)


def _service(source, vmapi, clock=None, **kwargs) -> ReconcilerService:
    return ReconcilerService(
        source,
        vmapi,
        server_uuid=SERVER_UUID,
        clock=clock or FakeClock(),
        **kwargs,
    )


def _reportable(source: FakeSource) -> Dict[str, VMRecord]:
    return {
        vm_uuid: record
        for vm_uuid, record in source.vms.items()
        if not record.do_not_inventory
    }


@pytest.mark.anyio("asyncio")
async def test_initial_sync_pushes_reportable_set():
    source = FakeSource(_vm("b"), _vm("a"), _vm("hidden", do_not_inventory=True))
    vmapi = FakeVmapi()
    service = _service(source, vmapi)

    assert await service._initialize() is True

    assert [record.uuid for record in vmapi.full_sets[0]] == ["a", "b"]
    assert [record.uuid for record in service.get_cached_vms()] == ["a", "b"]
    assert service.initial_sync_completed


@pytest.mark.anyio("asyncio")
async def test_create_update_delete_lifecycle():
    source = FakeSource()
    vmapi = FakeVmapi()
    service = _service(source, vmapi)
    await service._initialize()

    source.vms["A"] = _vm("A", quota=10)
    assert await service.run_cycle() is True
    assert vmapi.pushed() == [("A", "running")]

    source.update("A", quota=20)
    await service.run_cycle()
    assert vmapi.pushed()[1:] == [("A", "running")]
    assert vmapi.pushes[1].quota == 20
    assert len(vmapi.pushes) == 2

    del source.vms["A"]
    await service.run_cycle()
    assert vmapi.pushed()[2:] == [("A", "destroyed")]
    assert vmapi.pushes[2].zone_state == "destroyed"
    assert service.get_cached_vm("A") is None


@pytest.mark.anyio("asyncio")
async def test_unchanged_snapshot_pushes_nothing():
    source = FakeSource(_vm("a"), _vm("b"))
    vmapi = FakeVmapi()
    service = _service(source, vmapi)
    await service._initialize()

    await service.run_cycle()
    await service.run_cycle()

    assert vmapi.pushes == []
    assert service.get_status().cycles_completed == 2


@pytest.mark.anyio("asyncio")
async def test_vm_created_excluded_is_never_reported():
    source = FakeSource()
    vmapi = FakeVmapi()
    service = _service(source, vmapi)
    await service._initialize()

    source.vms["B"] = _vm("B", do_not_inventory=True)
    await service.run_cycle()
    source.update("B", state="stopped")
    await service.run_cycle()
    del source.vms["B"]
    await service.run_cycle()

    assert vmapi.pushes == []
    assert service.get_cached_vm("B") is None


@pytest.mark.anyio("asyncio")
async def test_rejected_vm_does_not_block_others():
    clock = FakeClock()
    source = FakeSource()
    vmapi = FakeVmapi()
    service = _service(source, vmapi, clock=clock)
    await service._initialize()

    for vm_uuid in ("C", "D", "E", "F", "G", "H"):
        source.vms[vm_uuid] = _vm(vm_uuid)
    vmapi.rejected.add("C")

    await service.run_cycle()

    assert sorted(vmapi.remote) == ["D", "E", "F", "G", "H"]
    assert service.get_cached_vm("C") is None
    status = service.get_status()
    assert status.last_cycle.created == 5
    assert status.last_cycle.failed == 1
    assert [(view.uuid, view.last_error_kind) for view in status.retries] == [
        ("C", SyncErrorKind.REJECTED)
    ]

    # Still backing off; nothing else is pending
    pushes_before = len(vmapi.pushes)
    await service.run_cycle()
    assert len(vmapi.pushes) == pushes_before
    assert service.get_status().last_cycle.deferred == 1

    vmapi.rejected.clear()
    clock.now += 60
    await service.run_cycle()

    assert "C" in vmapi.remote
    assert service.get_cached_vm("C") is not None
    assert service.get_status().retries == []


@pytest.mark.anyio("asyncio")
async def test_rejected_update_is_retried_with_fresh_state():
    clock = FakeClock()
    source = FakeSource(_vm("a", quota=10))
    vmapi = FakeVmapi()
    service = _service(source, vmapi, clock=clock)
    await service._initialize()

    vmapi.rejected.add("a")
    source.update("a", quota=20)
    await service.run_cycle()
    # The old cache entry is untouched so the next diff still sees a change
    assert service.get_cached_vm("a").quota == 10

    vmapi.rejected.clear()
    source.update("a", quota=30)
    clock.now += 60
    await service.run_cycle()

    assert vmapi.pushes[-1].quota == 30
    assert service.get_cached_vm("a").quota == 30


@pytest.mark.anyio("asyncio")
async def test_transient_push_failure_is_retried_next_cycle():
    clock = FakeClock()
    source = FakeSource()
    vmapi = FakeVmapi()
    service = _service(source, vmapi, clock=clock)
    await service._initialize()

    source.vms["a"] = _vm("a")
    vmapi.unavailable.add("a")
    await service.run_cycle()

    assert service.get_cached_vm("a") is None
    assert service.get_status().retries[0].last_error_kind == SyncErrorKind.TRANSIENT

    vmapi.unavailable.clear()
    clock.now += 60
    await service.run_cycle()

    assert service.get_cached_vm("a") is not None
    assert service.get_status().retries == []


@pytest.mark.anyio("asyncio")
async def test_exclusion_transition(monkeypatch):
    monkeypatch.setattr(settings, "report_excluded_as_deleted", False)
    source = FakeSource(_vm("a", alias="db01"))
    vmapi = FakeVmapi()
    service = _service(source, vmapi)
    await service._initialize()

    source.update("a", do_not_inventory=True)
    await service.run_cycle()
    assert vmapi.pushes == []
    assert service.get_cached_vm("a") is None
    assert service.get_status().last_cycle.excluded == 1

    # Changes while excluded are not reported
    source.update("a", state="stopped")
    await service.run_cycle()
    source.update("a", state="running")
    await service.run_cycle()
    assert vmapi.pushes == []

    source.update("a", do_not_inventory=False, alias="db02")
    await service.run_cycle()
    assert len(vmapi.pushes) == 1
    assert vmapi.pushes[0].alias == "db02"
    assert vmapi.pushes[0].do_not_inventory is False

    source.update("a", do_not_inventory=True)
    await service.run_cycle()
    source.update("a", state="stopped")
    await service.run_cycle()
    assert len(vmapi.pushes) == 1


@pytest.mark.anyio("asyncio")
async def test_excluded_vm_reported_as_destroyed_when_enabled(monkeypatch):
    monkeypatch.setattr(settings, "report_excluded_as_deleted", True)
    source = FakeSource(_vm("a"))
    vmapi = FakeVmapi()
    service = _service(source, vmapi)
    await service._initialize()

    source.update("a", do_not_inventory=True)
    await service.run_cycle()

    assert vmapi.pushed() == [("a", "destroyed")]
    assert "a" not in vmapi.remote
    assert service.get_cached_vm("a") is None


@pytest.mark.anyio("asyncio")
async def test_retry_state_dropped_for_vm_excluded_after_failure():
    source = FakeSource()
    vmapi = FakeVmapi()
    service = _service(source, vmapi)
    await service._initialize()

    source.vms["x"] = _vm("x")
    vmapi.unavailable.add("x")
    await service.run_cycle()
    assert len(service.get_status().retries) == 1

    source.update("x", do_not_inventory=True)
    await service.run_cycle()
    del source.vms["x"]
    await service.run_cycle()

    assert service.get_status().retries == []
    assert service.get_metrics()["pending_retries"] == 0


@pytest.mark.anyio("asyncio")
async def test_enumeration_failure_fails_cycle_without_touching_cache():
    source = FakeSource(_vm("a"))
    vmapi = FakeVmapi()
    service = _service(source, vmapi)
    await service._initialize()

    source.errors.append(SourceUnavailable("VM lookup failed (exit=1): zoneadm busy"))
    assert await service.run_cycle() is False

    status = service.get_status()
    assert status.cycles_failed == 1
    assert status.last_cycle.succeeded is False
    assert "zoneadm busy" in status.last_cycle.error
    assert service.get_cached_vm("a") is not None
    assert vmapi.pushes == []


@pytest.mark.anyio("asyncio")
async def test_unexpected_push_error_counts_as_transient():
    source = FakeSource()
    vmapi = FakeVmapi()
    service = _service(source, vmapi)
    await service._initialize()

    async def broken_push(record, *, stop_event=None):
        raise ValueError("unexpected")

    vmapi.push_one = broken_push
    source.vms["a"] = _vm("a")

    assert await service.run_cycle() is True
    (retry,) = service.get_status().retries
    assert retry.last_error_kind == SyncErrorKind.TRANSIENT
    assert "unexpected" in retry.last_error


@pytest.mark.anyio("asyncio")
async def test_pushes_are_bounded_by_concurrency(monkeypatch):
    monkeypatch.setattr(settings, "sync_concurrency", 2)
    source = FakeSource()
    vmapi = FakeVmapi()
    service = _service(source, vmapi)
    await service._initialize()

    in_flight = 0
    peak = 0

    async def slow_push(record, *, stop_event=None):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.01)
        in_flight -= 1
        return SyncAck(status_code=200, records=1, vm_uuid=record.uuid)

    vmapi.push_one = slow_push
    for index in range(6):
        source.vms[f"vm-{index}"] = _vm(f"vm-{index}")

    await service.run_cycle()

    assert peak == 2
    assert len(service.get_cached_vms()) == 6


@pytest.mark.anyio("asyncio")
async def test_remote_view_converges_with_source(monkeypatch):
    monkeypatch.setattr(settings, "report_excluded_as_deleted", False)
    clock = FakeClock()
    source = FakeSource(_vm("a"), _vm("b", do_not_inventory=True))
    vmapi = FakeVmapi()
    service = _service(source, vmapi, clock=clock)
    await service._initialize()

    steps = [
        lambda: source.vms.update(c=_vm("c", alias="new")),
        lambda: source.update("a", state="stopped"),
        lambda: vmapi.unavailable.add("c"),
        lambda: source.update("c", quota=5),
        lambda: source.update("b", do_not_inventory=False),
        lambda: vmapi.unavailable.clear(),
        lambda: source.vms.pop("a"),
        lambda: source.update("c", do_not_inventory=True),
    ]
    for step in steps:
        step()
        await service.run_cycle()
        clock.now += 60

    # A couple of healthy cycles settle anything still pending
    for _ in range(2):
        await service.run_cycle()
        clock.now += 60

    # VMs flagged after being reported are left alone remotely
    excluded = {vm_uuid for vm_uuid, record in source.vms.items() if record.do_not_inventory}
    remote_view = {
        vm_uuid: record for vm_uuid, record in vmapi.remote.items() if vm_uuid not in excluded
    }
    assert remote_view == _reportable(source)


@pytest.mark.anyio("asyncio")
async def test_start_retries_initialisation_until_accepted():
    source = FakeSource(_vm("a"))
    source.errors.append(SourceUnavailable("vmadm unavailable"))
    vmapi = FakeVmapi()
    vmapi.read_errors.append(SyncTransient("Network error talking to VMAPI: connection refused"))
    vmapi.full_set_errors.append(SyncTransient("VMAPI returned 503: unavailable", status_code=503))
    service = ReconcilerService(source, vmapi, server_uuid=SERVER_UUID, interval=0.01)

    await service.start()
    assert service.phase is AgentPhase.INITIALIZING
    try:
        await asyncio.wait_for(service.wait_for_initial_sync(), timeout=5)
    finally:
        await service.stop()

    assert source.calls >= 4
    assert vmapi.reads >= 3
    assert len(vmapi.full_sets) == 1
    assert not service.get_metrics()["initial_sync_fallback"]
    assert service.get_cached_vm("a") is not None
    assert service.phase is AgentPhase.STOPPED
    assert not service.is_running


@pytest.mark.anyio("asyncio")
async def test_stop_before_initial_sync():
    source = FakeSource()
    source.errors.extend(SourceUnavailable("vmadm unavailable") for _ in range(1000))
    vmapi = FakeVmapi()
    service = ReconcilerService(source, vmapi, server_uuid=SERVER_UUID, interval=0.01)

    await service.start()
    await asyncio.sleep(0.05)
    await asyncio.wait_for(service.stop(), timeout=5)

    assert not service.initial_sync_completed
    assert vmapi.full_sets == []
    assert service.phase is AgentPhase.STOPPED


@pytest.mark.anyio("asyncio")
async def test_stop_waits_for_in_flight_push():
    source = FakeSource()
    vmapi = FakeVmapi()
    push_started = asyncio.Event()
    release_push = asyncio.Event()

    async def gated_push(record, *, stop_event=None):
        push_started.set()
        await release_push.wait()
        return SyncAck(status_code=200, records=1, vm_uuid=record.uuid)

    vmapi.push_one = gated_push
    service = ReconcilerService(source, vmapi, server_uuid=SERVER_UUID, interval=0.01)

    await service.start()
    await asyncio.wait_for(service.wait_for_initial_sync(), timeout=5)
    source.vms["a"] = _vm("a")
    await asyncio.wait_for(push_started.wait(), timeout=5)

    stop_task = asyncio.create_task(service.stop())
    await asyncio.sleep(0.05)
    assert not stop_task.done()

    release_push.set()
    await asyncio.wait_for(stop_task, timeout=5)

    assert service.get_cached_vm("a") is not None
    assert service.phase is AgentPhase.STOPPED


@pytest.mark.anyio("asyncio")
async def test_restart_resynchronises_from_empty_cache():
    source = FakeSource(_vm("a"))
    vmapi = FakeVmapi()
    service = ReconcilerService(source, vmapi, server_uuid=SERVER_UUID, interval=0.01)

    for _ in range(2):
        await service.start()
        await asyncio.wait_for(service.wait_for_initial_sync(), timeout=5)
        await service.stop()

    assert len(vmapi.full_sets) == 2


@pytest.mark.anyio("asyncio")
async def test_initial_sync_reads_remote_view_before_full_set():
    source = FakeSource(_vm("a"))
    vmapi = FakeVmapi()
    vmapi.remote = {"a": _vm("a"), "gone": _vm("gone")}
    service = _service(source, vmapi)

    assert await service._initialize() is True

    assert vmapi.calls == ["get_server_vms", "push_full_set"]
    assert sorted(vmapi.remote) == ["a"]
    assert not service.get_metrics()["initial_sync_fallback"]


@pytest.mark.anyio("asyncio")
async def test_refused_remote_listing_still_pushes_full_set():
    source = FakeSource(_vm("a"))
    vmapi = FakeVmapi()
    vmapi.read_errors.append(SyncRejected("VMAPI returned 403: forbidden", status_code=403))
    service = _service(source, vmapi)

    assert await service._initialize() is True

    assert [record.uuid for record in vmapi.full_sets[0]] == ["a"]
    assert service.initial_sync_completed


@pytest.mark.anyio("asyncio")
async def test_rejected_full_set_falls_back_to_single_pushes():
    clock = FakeClock()
    source = FakeSource(_vm("good"), _vm("bad"), _vm("kept", quota=10))
    vmapi = FakeVmapi()
    vmapi.remote = {"kept": _vm("kept", quota=10), "old": _vm("old")}
    vmapi.rejected.add("bad")
    service = _service(source, vmapi, clock=clock)

    assert await service._initialize() is True

    assert vmapi.full_sets == []
    assert service.initial_sync_completed
    assert service.get_metrics()["initial_sync_fallback"] is True
    assert sorted(record.uuid for record in service.get_cached_vms()) == ["kept", "old"]

    assert await service.run_cycle() is True

    assert sorted(vmapi.remote) == ["good", "kept"]
    assert ("old", "destroyed") in vmapi.pushed()
    assert ("kept", "running") not in vmapi.pushed()
    assert service.get_cached_vm("bad") is None
    assert [(view.uuid, view.last_error_kind) for view in service.get_status().retries] == [
        ("bad", SyncErrorKind.REJECTED)
    ]

    vmapi.rejected.clear()
    clock.now += 60
    await service.run_cycle()

    assert sorted(vmapi.remote) == ["bad", "good", "kept"]
    assert service.get_status().retries == []


@pytest.mark.anyio("asyncio")
async def test_started_agent_reports_good_vms_when_full_set_rejected():
    source = FakeSource(_vm("good"), _vm("bad"))
    vmapi = FakeVmapi()
    vmapi.rejected.add("bad")
    service = ReconcilerService(source, vmapi, server_uuid=SERVER_UUID, interval=0.01)

    await service.start()
    try:
        await asyncio.wait_for(service.wait_for_initial_sync(), timeout=5)
        for _ in range(500):
            if "good" in vmapi.remote:
                break
            await asyncio.sleep(0.01)
        assert service.phase is AgentPhase.STEADY_STATE
    finally:
        await service.stop()

    assert "good" in vmapi.remote
    assert "bad" not in vmapi.remote
    assert vmapi.full_sets == []


@pytest.mark.anyio("asyncio")
async def test_unexpected_error_during_initialisation_ends_loop():
    source = FakeSource(_vm("a"))
    source.errors.append(TypeError("unsupported operand"))
    vmapi = FakeVmapi()
    service = ReconcilerService(source, vmapi, server_uuid=SERVER_UUID, interval=0.01)

    await service.start()
    for _ in range(500):
        if service.failure is not None:
            break
        await asyncio.sleep(0.01)

    assert isinstance(service.failure, TypeError)
    assert source.calls == 1
    assert service.phase is AgentPhase.STOPPED
    assert service.get_metrics()["failure"].startswith("TypeError")
    assert not service.initial_sync_completed

    await service.stop()
    assert service.phase is AgentPhase.STOPPED
