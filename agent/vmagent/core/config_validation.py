"""Configuration validation utilities."""
from __future__ import annotations

import ipaddress
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional
from urllib.parse import urlsplit

from .config import (
    settings,
    set_config_validation_result,
    get_config_validation_result,
)


class ConfigurationError(RuntimeError):
    """Raised when the agent cannot start because its configuration is invalid."""

    def __init__(self, issues: List["ConfigIssue"]):
        self.issues = list(issues)
        summary = "; ".join(issue.message for issue in self.issues) or "invalid configuration"
        super().__init__(f"Invalid configuration: {summary}")


@dataclass
class ConfigIssue:
    """Represents a single configuration issue."""

    message: str
    hint: Optional[str] = None


@dataclass
class ConfigValidationResult:
    """Outcome of running configuration checks."""

    checked_at: datetime
    errors: List[ConfigIssue] = field(default_factory=list)
    warnings: List[ConfigIssue] = field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    @property
    def has_warnings(self) -> bool:
        return bool(self.warnings)

    def raise_for_errors(self) -> None:
        """Raise ``ConfigurationError`` when any error was collected."""
        if self.errors:
            raise ConfigurationError(self.errors)


def _warn(result: ConfigValidationResult, message: str, hint: Optional[str] = None) -> None:
    result.warnings.append(ConfigIssue(message=message, hint=hint))


def _error(result: ConfigValidationResult, message: str, hint: Optional[str] = None) -> None:
    result.errors.append(ConfigIssue(message=message, hint=hint))


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(value)
    except (TypeError, ValueError):
        return False
    return True


def _is_loopback(host: str) -> bool:
    if host.lower() == "localhost":
        return True
    try:
        return ipaddress.ip_address(host).is_loopback
    except ValueError:
        return False


def run_config_checks(force: bool = False) -> ConfigValidationResult:
    """Validate configuration combinations and cache the result."""

    if not force:
        cached = get_config_validation_result()
        if cached is not None:
            return cached

    result = ConfigValidationResult(checked_at=datetime.now(timezone.utc))

    # SERVER_UUID identifies this node to the inventory API.
    server_uuid = (settings.server_uuid or "").strip()
    if not server_uuid:
        _error(
            result,
            "SERVER_UUID is required.",
            "Set SERVER_UUID to the UUID of this compute node.",
        )
    elif not _is_uuid(server_uuid):
        _error(
            result,
            "SERVER_UUID is not a valid UUID.",
            "Use the node's sysinfo UUID, e.g. 564d9a2e-0f1c-4c3a-9d7b-2f7e8a1b3c4d.",
        )

    base_url = settings.get_vmapi_base_url()
    if not base_url:
        _error(
            result,
            "VMAPI_URL is required.",
            "Set VMAPI_URL to the base address of the inventory API.",
        )
    else:
        parts = urlsplit(base_url)
        if parts.scheme not in ("http", "https") or not parts.netloc:
            _error(
                result,
                "VMAPI_URL must be an absolute http or https URL.",
                "Example: VMAPI_URL=http://vmapi.example.com",
            )

    if settings.periodic_interval <= 0:
        _error(
            result,
            "PERIODIC_INTERVAL must be greater than zero.",
            "Use the number of seconds between reconciliation cycles, e.g. 60.",
        )
    elif settings.periodic_interval < settings.vmapi_timeout:
        _warn(
            result,
            "PERIODIC_INTERVAL is shorter than VMAPI_TIMEOUT.",
            "Slow inventory API responses may delay cycles beyond the configured interval.",
        )

    if settings.sync_concurrency < 1:
        _error(
            result,
            "SYNC_CONCURRENCY must be at least 1.",
        )

    if settings.vmapi_max_attempts < 1:
        _error(
            result,
            "VMAPI_MAX_ATTEMPTS must be at least 1.",
        )

    if settings.retry_initial_delay <= 0:
        _error(
            result,
            "RETRY_INITIAL_DELAY must be greater than zero.",
        )
    elif settings.retry_initial_delay > settings.retry_max_delay:
        _error(
            result,
            "RETRY_INITIAL_DELAY must not exceed RETRY_MAX_DELAY.",
            "Lower RETRY_INITIAL_DELAY or raise RETRY_MAX_DELAY.",
        )

    if not settings.get_vmadm_lookup_command():
        _error(
            result,
            "VMADM_LOOKUP_COMMAND is empty or cannot be parsed.",
            "Set VMADM_LOOKUP_COMMAND to a command printing a JSON array of VMs.",
        )

    if settings.debug:
        _warn(
            result,
            "DEBUG is enabled.",
            "Debug logging includes full inventory payloads; disable it in production.",
        )

    if not _is_loopback(settings.listen_host):
        _warn(
            result,
            f"Diagnostics listener is bound to non-loopback address {settings.listen_host}.",
            "Set LISTEN_HOST=127.0.0.1 unless remote access to /api/v1 is intended.",
        )

    set_config_validation_result(result)
    return result
