"""Data models for the agent."""
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class VMState(str, Enum):
    """Lifecycle states reported by the hypervisor control interface."""
    CONFIGURED = "configured"
    PROVISIONING = "provisioning"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"
    DESTROYED = "destroyed"


class ChangeKind(str, Enum):
    """Kind of transition detected between two snapshots."""
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


class SyncErrorKind(str, Enum):
    """Classification of an inventory API failure."""
    TRANSIENT = "transient"
    REJECTED = "rejected"


class AgentPhase(str, Enum):
    """Reconciliation loop state."""
    INITIALIZING = "initializing"
    STEADY_STATE = "steady_state"
    STOPPED = "stopped"


class VMSnapshot(BaseModel):
    """A named snapshot of a VM."""

    model_config = ConfigDict(extra="allow")

    name: Optional[str] = None
    created_at: Any = None


class VMRecord(BaseModel):
    """Reportable state of one virtual machine.

    Only the fields the agent reasons about are declared; every other field the
    hypervisor returns is kept as an extra so it is compared and reported too.
    """

    model_config = ConfigDict(extra="allow")

    uuid: str
    state: Optional[str] = None
    zone_state: Optional[str] = None
    alias: Optional[str] = None
    brand: Optional[str] = None
    # Passed through to VMAPI as reported
    quota: Any = None
    customer_metadata: Optional[Dict[str, Any]] = Field(default_factory=dict)
    snapshots: Optional[List[VMSnapshot]] = Field(default_factory=list)
    do_not_inventory: Optional[bool] = None
    last_modified: Optional[str] = None
    # Volatile fields that change across restarts
    pid: Any = None
    boot_timestamp: Any = None

    @classmethod
    def destroyed(cls, vm_uuid: str, when: Optional[datetime] = None) -> "VMRecord":
        """Build the minimal terminal record sent when a VM disappears."""
        moment = when or datetime.now(timezone.utc)
        return cls(
            uuid=vm_uuid,
            state=VMState.DESTROYED.value,
            zone_state=VMState.DESTROYED.value,
            last_modified=moment.strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
        )

    def to_payload(self) -> Dict[str, Any]:
        """Serialise the record as an inventory API request body."""
        return self.model_dump(mode="json", exclude_unset=True, exclude_none=True)


@dataclass(frozen=True)
class ChangeEvent:
    """A transition detected for one VM between two snapshots."""

    kind: ChangeKind
    uuid: str
    record: VMRecord
    # Deleted because the do-not-inventory flag was set, not because the VM is gone
    excluded: bool = False


@dataclass
class RetryState:
    """Consecutive synchronisation failures for one VM."""

    uuid: str
    failures: int
    last_error_kind: SyncErrorKind
    last_error: str
    next_attempt_at: float  # monotonic clock
    last_failed_at: Optional[datetime] = None


class RetryStateView(BaseModel):
    """Retry state as exposed on the diagnostics API."""

    uuid: str
    failures: int
    last_error_kind: SyncErrorKind
    last_error: str
    retry_in_seconds: float
    last_failed_at: Optional[datetime] = None


class CycleSummary(BaseModel):
    """Outcome of the most recent reconciliation cycle."""

    started_at: datetime
    finished_at: Optional[datetime] = None
    succeeded: bool = False
    created: int = 0
    updated: int = 0
    deleted: int = 0
    excluded: int = 0
    deferred: int = 0
    failed: int = 0
    error: Optional[str] = None


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    timestamp: datetime
    phase: Optional[AgentPhase] = None


class AgentStatusResponse(BaseModel):
    """Operational view of the reconciliation loop."""

    phase: AgentPhase
    server_uuid: Optional[str] = None
    initial_sync_completed: bool = False
    cycles_completed: int = 0
    cycles_failed: int = 0
    cached_vms: int = 0
    last_cycle: Optional[CycleSummary] = None
    retries: List[RetryStateView] = Field(default_factory=list)


class ReconcilerMetrics(BaseModel):
    """Diagnostic counters of the reconciliation loop."""

    phase: AgentPhase
    running: bool
    initial_sync_completed: bool
    initial_sync_fallback: bool
    cycles_completed: int
    cycles_failed: int
    cached_vms: int
    pending_retries: int
    failure: Optional[str] = None


class VmapiClientMetrics(BaseModel):
    """Diagnostic view of the VMAPI client."""

    base_url: Optional[str] = None
    connected: bool
    max_attempts: int


class ServiceDiagnosticsResponse(BaseModel):
    """Composite diagnostics payload returned by the API."""

    reconciler: ReconcilerMetrics
    vmapi: VmapiClientMetrics
