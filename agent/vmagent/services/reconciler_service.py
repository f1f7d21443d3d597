"""Reconciliation loop keeping VMAPI in step with the VMs on this node."""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

from ..core.config import settings
from ..core.diff_engine import diff_snapshots
from ..core.inclusion import is_reportable, reportable_only
from ..core.models import (
    AgentPhase,
    AgentStatusResponse,
    ChangeEvent,
    ChangeKind,
    CycleSummary,
    SyncErrorKind,
    VMRecord,
)
from ..core.retry import RetryBook, compute_backoff, sleep_unless_set
from ..core.state_cache import StateCache
from .vmadm_service import SourceUnavailable, VmadmService, vmadm_service
from .vmapi_client import (
    SyncAck,
    SyncError,
    SyncRejected,
    SyncTransient,
    VmapiClient,
    vmapi_client,
)

logger = logging.getLogger(__name__)


PushOutcome = Union[SyncAck, SyncError]


class ReconcilerService:
    """Owns the reported-state cache and drives enumerate/diff/push cycles.

    Startup pushes the full reportable set once and adopts it as the cache.
    Every ``periodic_interval`` afterwards a fresh snapshot is diffed against
    the cache and each change is pushed on its own, with bounded concurrency.
    Only this service mutates the cache and the retry book, and it does so
    after a VM's push has resolved, never from the push tasks themselves.
    """

    def __init__(
        self,
        source: Optional[VmadmService] = None,
        client: Optional[VmapiClient] = None,
        *,
        server_uuid: Optional[str] = None,
        interval: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._source = source if source is not None else vmadm_service
        self._client = client if client is not None else vmapi_client
        self._server_uuid = server_uuid
        self._interval = interval
        self._clock = clock
        self._cache = StateCache()
        self._retries = RetryBook(
            settings.retry_initial_delay, settings.retry_max_delay, clock=clock
        )
        self.phase = AgentPhase.STOPPED
        self._run_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._initial_sync_event = asyncio.Event()
        self._cycles_completed = 0
        self._cycles_failed = 0
        self._consecutive_cycle_failures = 0
        self._last_cycle: Optional[CycleSummary] = None
        self._initial_sync_fallback = False
        self._failure: Optional[BaseException] = None

    @property
    def server_uuid(self) -> Optional[str]:
        return self._server_uuid or settings.server_uuid

    @property
    def interval(self) -> float:
        value = self._interval if self._interval is not None else settings.periodic_interval
        return max(0.01, float(value))

    @property
    def initial_sync_completed(self) -> bool:
        return self._initial_sync_event.is_set()

    @property
    def is_running(self) -> bool:
        return self._run_task is not None and not self._run_task.done()

    @property
    def failure(self) -> Optional[BaseException]:
        """The unexpected error that ended the loop, if any."""
        return self._failure

    async def start(self) -> None:
        """Start the reconciliation loop from an empty cache."""

        if self.is_running:
            logger.debug("Reconciler already running; skipping duplicate start")
            return

        logger.info(
            "Starting reconciler for server %s (interval %.1fs)",
            self.server_uuid,
            self.interval,
        )
        # A restart always resynchronises from scratch; the hypervisor is the source of truth.
        self._cache.clear()
        self._retries.clear()
        self._stop_event = asyncio.Event()
        self._initial_sync_event = asyncio.Event()
        self._consecutive_cycle_failures = 0
        self._initial_sync_fallback = False
        self._failure = None
        self.phase = AgentPhase.INITIALIZING

        loop = asyncio.get_running_loop()
        self._run_task = loop.create_task(self._run(), name="vm-agent-reconciler")
        self._run_task.add_done_callback(self._on_run_finished)

    async def stop(self) -> None:
        """Stop after the in-flight cycle has finished its outstanding pushes."""

        task = self._run_task
        if task is None:
            self.phase = AgentPhase.STOPPED
            return

        logger.info("Stopping reconciler")
        self._stop_event.set()

        timeout = max(0.0, float(settings.shutdown_timeout))
        try:
            # asyncio.wait leaves the task running on timeout
            _, pending = await asyncio.wait({task}, timeout=timeout)
            if pending:
                logger.warning(
                    "Reconciler cycle still draining after %.1fs; waiting for in-flight pushes",
                    timeout,
                )
                await asyncio.wait({task})
        finally:
            self._run_task = None
            self.phase = AgentPhase.STOPPED
        logger.info("Reconciler stopped")

    def _on_run_finished(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._failure = exc
            logger.critical(
                "Reconciler stopped on an unexpected error: %s", exc, exc_info=exc
            )

    async def wait_for_initial_sync(self) -> None:
        await self._initial_sync_event.wait()

    async def _run(self) -> None:
        try:
            if not await self._initialize():
                return

            self.phase = AgentPhase.STEADY_STATE
            while not self._stop_event.is_set():
                cycle_start = self._clock()
                try:
                    succeeded = await self.run_cycle()
                except Exception as exc:
                    logger.exception("Reconciliation cycle failed: %s", exc)
                    if self._last_cycle is not None and self._last_cycle.finished_at is None:
                        self._finish_cycle(self._last_cycle, error=str(exc))
                    succeeded = False

                if succeeded:
                    elapsed = self._clock() - cycle_start
                    delay = max(0.0, self.interval - elapsed)
                else:
                    delay = min(
                        self.interval,
                        compute_backoff(
                            self._consecutive_cycle_failures,
                            settings.retry_initial_delay,
                            settings.retry_max_delay,
                        ),
                    )
                    logger.info("Retrying reconciliation cycle in %.1fs", delay)

                if await sleep_unless_set(self._stop_event, delay):
                    break
        finally:
            self.phase = AgentPhase.STOPPED

    async def _initialize(self) -> bool:
        """Push the full reportable set until VMAPI accepts it.

        VMAPI's current view of this server is read first. If VMAPI rejects
        the full set, that view is adopted as the cache instead so the steady
        state pushes each VM on its own and a single bad record stays isolated.
        Only enumeration and VMAPI failures are retried; anything else is a
        programming error and ends the reconciler.

        Returns False if a stop was requested before either happened.
        """

        attempt = 0
        while not self._stop_event.is_set():
            attempt += 1
            try:
                snapshot = await self._source.enumerate()
                remote = await self._read_remote_view()
                reportable = reportable_only(snapshot)
                stale = sorted(set(remote) - set(snapshot))
                if stale:
                    logger.info(
                        "VMAPI lists %d VM(s) no longer on this server; the full set drops them: %s",
                        len(stale),
                        ", ".join(stale),
                    )
                try:
                    ack = await self._client.push_full_set(
                        self.server_uuid,
                        [reportable[vm_uuid] for vm_uuid in sorted(reportable)],
                        stop_event=self._stop_event,
                    )
                except SyncRejected as exc:
                    self._adopt_remote_view(remote, exc)
                    return True
            except SourceUnavailable as exc:
                logger.warning(
                    "Initial VM enumeration failed (attempt %d): %s", attempt, exc.message
                )
            except SyncError as exc:
                logger.warning(
                    "Initial synchronisation with VMAPI failed (attempt %d, %s): %s",
                    attempt,
                    exc.kind.value,
                    exc.message,
                )
            else:
                self._cache.replace_all(reportable)
                self._initial_sync_fallback = False
                self._initial_sync_event.set()
                excluded = len(snapshot) - len(reportable)
                logger.info(
                    "Initial synchronisation complete: %d VM(s) reported, %d excluded (HTTP %d)",
                    ack.records,
                    excluded,
                    ack.status_code,
                )
                return True

            delay = compute_backoff(
                attempt, settings.retry_initial_delay, settings.retry_max_delay
            )
            logger.info("Retrying initial synchronisation in %.1fs", delay)
            if await sleep_unless_set(self._stop_event, delay):
                break

        logger.info("Stop requested before initial synchronisation completed")
        return False

    async def _read_remote_view(self) -> Dict[str, VMRecord]:
        """Return VMAPI's active VMs for this server, or nothing if it refuses to say."""

        try:
            return await self._client.get_server_vms(
                self.server_uuid, stop_event=self._stop_event
            )
        except SyncRejected as exc:
            logger.warning(
                "VMAPI refused to list VMs for server %s: %s; assuming it knows none",
                self.server_uuid,
                exc.message,
            )
            return {}

    def _adopt_remote_view(self, remote: Dict[str, VMRecord], exc: SyncRejected) -> None:
        self._cache.replace_all(remote)
        self._initial_sync_fallback = True
        self._initial_sync_event.set()
        logger.warning(
            "VMAPI rejected the full VM set (HTTP %s): %s; "
            "reporting VMs one at a time starting from VMAPI's view of %d VM(s)",
            exc.status_code,
            exc.message,
            len(remote),
        )

    async def run_cycle(self) -> bool:
        """Run one enumerate/diff/push cycle.

        Returns False when the whole cycle has to be retried because the VM
        listing was unavailable. Individual VM failures do not fail the cycle.
        """

        summary = CycleSummary(started_at=datetime.now(timezone.utc))
        self._last_cycle = summary

        try:
            snapshot = await self._source.enumerate()
        except SourceUnavailable as exc:
            logger.warning("VM enumeration failed: %s", exc.message)
            return self._finish_cycle(summary, error=exc.message)
        except Exception as exc:
            logger.exception("Unexpected error enumerating VMs: %s", exc)
            return self._finish_cycle(summary, error=str(exc))

        events = diff_snapshots(self._cache.view(), snapshot, is_reportable)

        dropped = self._retries.prune(event.uuid for event in events)
        if dropped:
            logger.debug("Dropped retry state for %d VM(s) with nothing pending", len(dropped))

        due: List[ChangeEvent] = []
        for event in events:
            if event.excluded and not settings.report_excluded_as_deleted:
                self._forget_excluded(event, summary)
            elif self._retries.is_due(event.uuid):
                due.append(event)
            else:
                summary.deferred += 1
                logger.debug("Deferring %s of VM %s until its backoff expires", event.kind.value, event.uuid)

        outcomes = await self._dispatch(due)
        for event, outcome in outcomes:
            self._apply_outcome(event, outcome, summary)

        return self._finish_cycle(summary)

    def _forget_excluded(self, event: ChangeEvent, summary: CycleSummary) -> None:
        self._cache.remove(event.uuid)
        self._retries.record_success(event.uuid)
        summary.excluded += 1
        logger.info("VM %s is now do_not_inventory; no longer reporting it", event.uuid)

    async def _dispatch(
        self, events: Sequence[ChangeEvent]
    ) -> List[Tuple[ChangeEvent, PushOutcome]]:
        """Push each event concurrently and collect outcomes without applying them."""

        if not events:
            return []

        semaphore = asyncio.Semaphore(max(1, settings.sync_concurrency))

        async def _push(event: ChangeEvent) -> Tuple[ChangeEvent, PushOutcome]:
            async with semaphore:
                try:
                    ack = await self._client.push_one(
                        event.record, stop_event=self._stop_event
                    )
                except SyncError as exc:
                    return event, exc
                except Exception as exc:
                    logger.exception("Unexpected error pushing VM %s: %s", event.uuid, exc)
                    return event, SyncTransient(str(exc), vm_uuid=event.uuid)
                return event, ack

        return list(await asyncio.gather(*(_push(event) for event in events)))

    def _apply_outcome(
        self, event: ChangeEvent, outcome: PushOutcome, summary: CycleSummary
    ) -> None:
        if isinstance(outcome, SyncAck):
            if event.kind is ChangeKind.DELETED:
                self._cache.remove(event.uuid)
                summary.deleted += 1
            else:
                self._cache.put(event.record)
                if event.kind is ChangeKind.CREATED:
                    summary.created += 1
                else:
                    summary.updated += 1
            previous = self._retries.record_success(event.uuid)
            if previous is not None:
                logger.info(
                    "VM %s synchronised after %d failed attempt(s)",
                    event.uuid,
                    previous.failures,
                )
            logger.debug("Reported %s for VM %s", event.kind.value, event.uuid)
            return

        summary.failed += 1
        state = self._retries.record_failure(event.uuid, outcome.kind, outcome.message)
        retry_in = max(0.0, state.next_attempt_at - self._clock())
        if outcome.kind is SyncErrorKind.REJECTED:
            logger.warning(
                "VMAPI rejected %s for VM %s (HTTP %s, failure %d): %s; retrying with fresh state in %.1fs or later",
                event.kind.value,
                event.uuid,
                outcome.status_code,
                state.failures,
                outcome.message,
                retry_in,
            )
        else:
            logger.warning(
                "Could not push %s for VM %s (failure %d): %s; retrying in %.1fs or later",
                event.kind.value,
                event.uuid,
                state.failures,
                outcome.message,
                retry_in,
            )

    def _finish_cycle(self, summary: CycleSummary, error: Optional[str] = None) -> bool:
        summary.finished_at = datetime.now(timezone.utc)
        summary.error = error
        summary.succeeded = error is None

        if error is not None:
            self._cycles_failed += 1
            self._consecutive_cycle_failures += 1
            return False

        self._cycles_completed += 1
        self._consecutive_cycle_failures = 0
        changes = summary.created + summary.updated + summary.deleted + summary.excluded
        log = logger.info if changes or summary.failed or summary.deferred else logger.debug
        log(
            "Reconciliation cycle complete: created=%d updated=%d deleted=%d excluded=%d "
            "deferred=%d failed=%d cached=%d",
            summary.created,
            summary.updated,
            summary.deleted,
            summary.excluded,
            summary.deferred,
            summary.failed,
            len(self._cache),
        )
        return True

    def get_cached_vms(self) -> List[VMRecord]:
        """Return the records last delivered to VMAPI."""
        return self._cache.records()

    def get_cached_vm(self, vm_uuid: str) -> Optional[VMRecord]:
        return self._cache.get(vm_uuid)

    def get_status(self) -> AgentStatusResponse:
        return AgentStatusResponse(
            phase=self.phase,
            server_uuid=self.server_uuid,
            initial_sync_completed=self.initial_sync_completed,
            cycles_completed=self._cycles_completed,
            cycles_failed=self._cycles_failed,
            cached_vms=len(self._cache),
            last_cycle=self._last_cycle.model_copy() if self._last_cycle else None,
            retries=self._retries.views(),
        )

    def get_metrics(self) -> Dict[str, object]:
        return {
            "phase": self.phase.value,
            "running": self.is_running,
            "initial_sync_completed": self.initial_sync_completed,
            "initial_sync_fallback": self._initial_sync_fallback,
            "cycles_completed": self._cycles_completed,
            "cycles_failed": self._cycles_failed,
            "cached_vms": len(self._cache),
            "pending_retries": len(self._retries),
            "failure": (
                f"{type(self._failure).__name__}: {self._failure}"
                if self._failure is not None
                else None
            ),
        }


reconciler_service = ReconcilerService()

__all__ = ["ReconcilerService", "reconciler_service"]
