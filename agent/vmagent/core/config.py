"""Configuration management using Pydantic settings."""

import shlex
from typing import List, Optional, TYPE_CHECKING

from pydantic_settings import BaseSettings


AGENT_VERSION = "1.0.0"
DEFAULT_VMADM_LOOKUP_COMMAND = "/usr/sbin/vmadm lookup -j"


class Settings(BaseSettings):
    """Agent settings loaded from environment variables."""

    # Application settings
    app_name: str = "vm-agent"
    app_version: str = AGENT_VERSION
    debug: bool = False

    # Identity of the compute node this agent reports for
    server_uuid: Optional[str] = None

    # Inventory API (VMAPI) settings
    vmapi_url: Optional[str] = None
    vmapi_timeout: float = 30.0  # seconds per HTTP request
    vmapi_max_attempts: int = 3  # attempts per push before giving up for this cycle

    # Reconciliation settings
    periodic_interval: float = 60.0  # seconds between steady-state cycles
    sync_concurrency: int = 8  # concurrent single-VM pushes per cycle
    retry_initial_delay: float = 1.0  # first backoff delay in seconds
    retry_max_delay: float = 30.0  # backoff ceiling in seconds
    shutdown_timeout: float = 60.0  # seconds to wait for an in-flight cycle on stop
    # Push a destroyed record when a reported VM gains the do-not-inventory flag
    report_excluded_as_deleted: bool = False

    # Hypervisor enumeration settings
    vmadm_lookup_command: str = DEFAULT_VMADM_LOOKUP_COMMAND
    vmadm_timeout: float = 120.0  # seconds

    # Diagnostics listener
    listen_host: str = "127.0.0.1"
    listen_port: int = 9090

    class Config:
        env_file = ".env"
        case_sensitive = False

    def get_vmapi_base_url(self) -> Optional[str]:
        """Return the configured VMAPI base URL without a trailing slash."""

        if not self.vmapi_url:
            return None

        return str(self.vmapi_url).strip().rstrip("/")

    def get_vmadm_lookup_command(self) -> List[str]:
        """Split the configured lookup command into argv form."""
        if not self.vmadm_lookup_command:
            return []
        try:
            return shlex.split(self.vmadm_lookup_command)
        except ValueError:
            return []


settings = Settings()


if TYPE_CHECKING:  # pragma: no cover - only for type hints
    from .config_validation import ConfigValidationResult

# Cache of the configuration validation result so it can be reused across modules
_config_validation_result: Optional["ConfigValidationResult"] = None


def set_config_validation_result(result: "ConfigValidationResult") -> None:
    """Persist the configuration validation result for reuse."""

    global _config_validation_result
    _config_validation_result = result


def get_config_validation_result() -> Optional["ConfigValidationResult"]:
    """Return the cached configuration validation result, if available."""

    return _config_validation_result
