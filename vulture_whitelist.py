# Vulture whitelist file
# This file contains false positives that vulture incorrectly flags as dead code.
# These are typically framework-registered functions, Pydantic fields, pytest fixtures, etc.
#
# Usage: python3 -m vulture agent vulture_whitelist.py

# =============================================================================
# FastAPI Route Handlers (registered via @router.get decorators)
# =============================================================================
# These functions are called by FastAPI when matching HTTP requests arrive.
# Vulture cannot see this because the registration happens via decorators.

health_check  # routes.py - GET /healthz
readiness_check  # routes.py - GET /readyz
get_status  # routes.py - GET /api/v1/status
get_service_diagnostics  # routes.py - GET /api/v1/diagnostics/services
list_vms  # routes.py - GET /api/v1/vms
get_vm  # routes.py - GET /api/v1/vms/{vm_uuid}

# =============================================================================
# FastAPI Middleware (registered via @app.middleware decorator)
# =============================================================================

security_and_audit_middleware  # main.py

# =============================================================================
# Pydantic Model Fields (accessed via JSON serialization/deserialization)
# =============================================================================
# These are schema fields that VMAPI and diagnostics clients read via JSON.
# Vulture sees them as unused class variables.

zone_state  # VMRecord
brand  # VMRecord
customer_metadata  # VMRecord
snapshots  # VMRecord
last_modified  # VMRecord
pid  # VMRecord
boot_timestamp  # VMRecord
created_at  # VMSnapshot
started_at  # CycleSummary
retry_in_seconds  # RetryStateView
cycles_completed  # AgentStatusResponse
cycles_failed  # AgentStatusResponse
cached_vms  # AgentStatusResponse
running  # ReconcilerMetrics
initial_sync_fallback  # ReconcilerMetrics
pending_retries  # ReconcilerMetrics
connected  # VmapiClientMetrics
reconciler  # ServiceDiagnosticsResponse
vmapi  # ServiceDiagnosticsResponse

# =============================================================================
# Pydantic model_config (ConfigDict for Pydantic v2 configuration)
# =============================================================================

model_config

# =============================================================================
# Pydantic Config class attributes
# =============================================================================

env_file  # Settings.Config
case_sensitive  # Settings.Config

# =============================================================================
# Enum Values (reported by the hypervisor and kept for completeness)
# =============================================================================

CONFIGURED
PROVISIONING
STOPPING
FAILED

# =============================================================================
# Settings read from the environment
# =============================================================================

listen_port
vmadm_timeout

# =============================================================================
# Pytest Fixtures (discovered by pytest at runtime by name)
# =============================================================================

anyio_backend  # conftest.py
client  # conftest.py
restore_config_validation  # test_config_validation.py
synced_reconciler  # test_health_and_readiness.py

# =============================================================================
# Test Helper Classes
# =============================================================================

RecordingHandler  # test_vmapi_client.py
