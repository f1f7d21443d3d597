"""Backoff computation and per-VM retry bookkeeping."""
from __future__ import annotations

import asyncio
import random
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional

from .models import RetryState, RetryStateView, SyncErrorKind


def compute_backoff(
    attempt: int,
    initial: float,
    maximum: float,
    *,
    jitter: float = 0.2,
    rand: Callable[[], float] = random.random,
) -> float:
    """Return the delay before retry number ``attempt`` (1-based).

    The delay doubles per attempt up to ``maximum``; ``jitter`` spreads it by
    up to that fraction downwards so a fleet of agents does not retry in step.
    """

    exponent = max(0, attempt - 1)
    # Cap the exponent so very long outages do not overflow the float
    delay = min(maximum, initial * (2 ** min(exponent, 32)))
    if jitter > 0:
        delay -= delay * jitter * rand()
    return max(0.0, delay)


async def sleep_unless_set(event: Optional[asyncio.Event], delay: float) -> bool:
    """Sleep for ``delay`` seconds, returning early if ``event`` is set.

    Returns True when the event was set, False when the full delay elapsed.
    """
    if event is None:
        await asyncio.sleep(delay)
        return False
    if event.is_set():
        return True
    try:
        await asyncio.wait_for(event.wait(), timeout=max(0.0, delay))
    except asyncio.TimeoutError:
        return False
    return True


class RetryBook:
    """Retry state for VMs whose last synchronisation attempt failed."""

    def __init__(
        self,
        initial_delay: float,
        max_delay: float,
        *,
        clock: Callable[[], float],
        rand: Callable[[], float] = random.random,
    ) -> None:
        self._states: Dict[str, RetryState] = {}
        self._initial_delay = initial_delay
        self._max_delay = max_delay
        self._clock = clock
        self._rand = rand

    def record_failure(self, vm_uuid: str, kind: SyncErrorKind, error: str) -> RetryState:
        """Count another consecutive failure and schedule the next attempt."""

        previous = self._states.get(vm_uuid)
        failures = previous.failures + 1 if previous else 1
        delay = compute_backoff(
            failures, self._initial_delay, self._max_delay, rand=self._rand
        )
        state = RetryState(
            uuid=vm_uuid,
            failures=failures,
            last_error_kind=kind,
            last_error=error,
            next_attempt_at=self._clock() + delay,
            last_failed_at=datetime.now(timezone.utc),
        )
        self._states[vm_uuid] = state
        return state

    def record_success(self, vm_uuid: str) -> Optional[RetryState]:
        return self._states.pop(vm_uuid, None)

    def is_due(self, vm_uuid: str) -> bool:
        """Return True when the VM has no pending backoff."""
        state = self._states.get(vm_uuid)
        return state is None or state.next_attempt_at <= self._clock()

    def get(self, vm_uuid: str) -> Optional[RetryState]:
        return self._states.get(vm_uuid)

    def prune(self, keep: Iterable[str]) -> List[str]:
        """Forget VMs that no longer have a pending change.

        Returns the uuids that were dropped.
        """
        keep_set = set(keep)
        stale = [vm_uuid for vm_uuid in self._states if vm_uuid not in keep_set]
        for vm_uuid in stale:
            del self._states[vm_uuid]
        return stale

    def clear(self) -> None:
        self._states.clear()

    def views(self) -> List[RetryStateView]:
        now = self._clock()
        return [
            RetryStateView(
                uuid=state.uuid,
                failures=state.failures,
                last_error_kind=state.last_error_kind,
                last_error=state.last_error,
                retry_in_seconds=round(max(0.0, state.next_attempt_at - now), 3),
                last_failed_at=state.last_failed_at,
            )
            for _, state in sorted(self._states.items())
        ]

    def __contains__(self, vm_uuid: object) -> bool:
        return vm_uuid in self._states

    def __len__(self) -> int:
        return len(self._states)
