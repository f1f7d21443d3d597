"""API route handlers."""
import logging
from datetime import datetime, timezone
from typing import List

from fastapi import APIRouter, HTTPException, Response, status

from ..core.config import settings, get_config_validation_result
from ..core.models import (
    AgentStatusResponse,
    HealthResponse,
    ServiceDiagnosticsResponse,
    VMRecord,
)
from ..services.reconciler_service import reconciler_service
from ..services.vmapi_client import vmapi_client

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/healthz", response_model=HealthResponse, tags=["Health"])
async def health_check():
    """Health check endpoint.

    Reports 503 once the reconciler has stopped on an unexpected error.
    """
    if reconciler_service.failure is not None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Reconciler stopped on an unexpected error",
        )
    return HealthResponse(
        status="healthy",
        version=settings.app_version,
        timestamp=datetime.now(timezone.utc),
        phase=reconciler_service.phase,
    )


@router.get("/readyz", response_model=HealthResponse, tags=["Health"])
async def readiness_check(response: Response):
    """Readiness check endpoint.

    The agent is ready once VMAPI has accepted the initial full VM set.
    """

    config_result = get_config_validation_result()
    if config_result and config_result.has_errors:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Configuration invalid",
        )

    if not reconciler_service.initial_sync_completed:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Inventory not yet synchronised",
        )

    response.status_code = status.HTTP_200_OK
    return HealthResponse(
        status="ready",
        version=settings.app_version,
        timestamp=datetime.now(timezone.utc),
        phase=reconciler_service.phase,
    )


@router.get("/api/v1/status", response_model=AgentStatusResponse, tags=["Diagnostics"])
async def get_status():
    """Return the reconciliation loop state, last cycle outcome and retry backlog."""
    return reconciler_service.get_status()


@router.get(
    "/api/v1/diagnostics/services",
    response_model=ServiceDiagnosticsResponse,
    tags=["Diagnostics"],
)
async def get_service_diagnostics():
    """Return operational diagnostics for the reconciler and the VMAPI client."""

    return ServiceDiagnosticsResponse(
        reconciler=reconciler_service.get_metrics(),
        vmapi=vmapi_client.get_metrics(),
    )


@router.get("/api/v1/vms", response_model=List[VMRecord], tags=["VMs"])
async def list_vms():
    """List the VM records last delivered to VMAPI."""
    return reconciler_service.get_cached_vms()


@router.get("/api/v1/vms/{vm_uuid}", response_model=VMRecord, tags=["VMs"])
async def get_vm(vm_uuid: str):
    """Get the last delivered record for one VM."""
    record = reconciler_service.get_cached_vm(vm_uuid)

    if not record:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"VM {vm_uuid} has not been reported"
        )

    return record
