"""Service enumerating local virtual machines through vmadm."""
from __future__ import annotations

import asyncio
import json
import logging
import subprocess
from typing import Any, Dict, List, Optional, Sequence

from pydantic import ValidationError

from ..core.config import settings
from ..core.models import VMRecord

logger = logging.getLogger(__name__)


class SourceUnavailable(RuntimeError):
    """Raised when the hypervisor could not produce a complete VM listing."""

    def __init__(self, message: str, *, command: Optional[Sequence[str]] = None):
        super().__init__(message)
        self.message = message
        self.command = list(command) if command else []


class VmadmService:
    """Produce full snapshots of the VMs known to the hypervisor.

    The listing includes VMs flagged do_not_inventory; deciding what to report
    happens further up. A call either returns every VM or raises
    ``SourceUnavailable``.
    """

    def __init__(
        self,
        command: Optional[Sequence[str]] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self._command = list(command) if command else None
        self._timeout = timeout

    @property
    def command(self) -> List[str]:
        return self._command or settings.get_vmadm_lookup_command()

    @property
    def timeout(self) -> float:
        value = self._timeout if self._timeout is not None else settings.vmadm_timeout
        return max(1.0, float(value))

    async def enumerate(self) -> Dict[str, VMRecord]:
        """Return every VM on this node keyed by uuid."""

        command = self.command
        if not command:
            raise SourceUnavailable("No VM lookup command configured")

        logger.debug("Enumerating VMs with %s", command)
        try:
            stdout, stderr, exit_code = await asyncio.to_thread(
                self._run_lookup, command, self.timeout
            )
        except FileNotFoundError as exc:
            raise SourceUnavailable(
                f"VM lookup command not found: {command[0]}", command=command
            ) from exc
        except subprocess.TimeoutExpired as exc:
            raise SourceUnavailable(
                f"VM lookup timed out after {self.timeout:.1f}s", command=command
            ) from exc
        except OSError as exc:
            raise SourceUnavailable(
                f"VM lookup could not be started: {exc}", command=command
            ) from exc

        if exit_code != 0:
            preview = (stderr or "").strip() or (stdout or "").strip()
            message = preview[:500] if preview else "Unknown error"
            logger.error("VM lookup exited with %s: %s", exit_code, message)
            raise SourceUnavailable(
                f"VM lookup failed (exit={exit_code}): {message}", command=command
            )

        return self._parse_listing(stdout, command)

    @staticmethod
    def _run_lookup(command: Sequence[str], timeout: float) -> tuple[str, str, int]:
        """Execute the lookup command and capture its output."""

        result = subprocess.run(
            list(command),
            capture_output=True,
            text=True,
            timeout=timeout,
        )
        return result.stdout, result.stderr, result.returncode

    @staticmethod
    def _parse_listing(stdout: str, command: Sequence[str]) -> Dict[str, VMRecord]:
        raw_output = (stdout or "").strip()
        if not raw_output:
            raise SourceUnavailable("VM lookup returned no data", command=command)

        try:
            payload: Any = json.loads(raw_output)
        except json.JSONDecodeError as exc:
            logger.debug("Raw VM lookup output: %s", raw_output[:2000])
            raise SourceUnavailable(
                f"VM lookup returned invalid JSON: {exc}", command=command
            ) from exc

        if not isinstance(payload, list):
            raise SourceUnavailable(
                f"Unexpected VM lookup payload type: {type(payload).__name__}",
                command=command,
            )

        records: Dict[str, VMRecord] = {}
        for index, item in enumerate(payload):
            if not isinstance(item, dict):
                raise SourceUnavailable(
                    f"VM lookup entry {index} is not an object", command=command
                )
            try:
                record = VMRecord.model_validate(item)
            except ValidationError as exc:
                raise SourceUnavailable(
                    f"VM lookup entry {index} is malformed: {exc.error_count()} error(s)",
                    command=command,
                ) from exc
            if record.uuid in records:
                raise SourceUnavailable(
                    f"VM lookup returned duplicate uuid {record.uuid}", command=command
                )
            records[record.uuid] = record

        logger.debug("VM lookup returned %d VM(s)", len(records))
        return records


# Global service instance
vmadm_service = VmadmService()

__all__ = [
    "SourceUnavailable",
    "VmadmService",
    "vmadm_service",
]
