"""Client exchanging VM state with the inventory API (VMAPI)."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, Mapping, Optional, TypeVar

import httpx
from pydantic import ValidationError

from ..core.config import settings
from ..core.models import SyncErrorKind, VMRecord
from ..core.retry import compute_backoff, sleep_unless_set

logger = logging.getLogger(__name__)

# Statuses in the 4xx range that still mean "try the same request again later"
TRANSIENT_CLIENT_STATUSES = frozenset({408, 425, 429})

T = TypeVar("T")


class SyncError(RuntimeError):
    """Base class for inventory API failures."""

    kind: SyncErrorKind = SyncErrorKind.TRANSIENT

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        vm_uuid: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.vm_uuid = vm_uuid


class SyncTransient(SyncError):
    """Connectivity or service failure; the same request may be retried."""

    kind = SyncErrorKind.TRANSIENT


class SyncRejected(SyncError):
    """The inventory API refused the data itself; retry only with fresh state."""

    kind = SyncErrorKind.REJECTED


@dataclass(slots=True)
class SyncAck:
    """Successful inventory API response."""

    status_code: int
    records: int
    vm_uuid: Optional[str] = None


def classify_status(status_code: int) -> Optional[SyncErrorKind]:
    """Map an HTTP status to an error kind, or None for success."""

    if 200 <= status_code < 300:
        return None
    if status_code in TRANSIENT_CLIENT_STATUSES:
        return SyncErrorKind.TRANSIENT
    # Redirects are not followed, so they are as final as a client error
    if 300 <= status_code < 500:
        return SyncErrorKind.REJECTED
    return SyncErrorKind.TRANSIENT


def _error_detail(response: httpx.Response) -> str:
    """Extract a short human-readable error from a VMAPI response."""
    if 300 <= response.status_code < 400:
        location = response.headers.get("Location") or "an unknown location"
        return f"redirected to {location}; check VMAPI_URL"

    try:
        body = response.json()
    except (json.JSONDecodeError, ValueError):
        body = None

    if isinstance(body, dict):
        for key in ("message", "code", "detail"):
            value = body.get(key)
            if isinstance(value, str) and value:
                return value[:200]

    text = (response.text or "").strip()
    return text[:200] if text else f"HTTP {response.status_code}"


class VmapiClient:
    """Read this server's VMs from, and push updates to, the inventory API."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        backoff: Optional[Callable[[int], float]] = None,
    ):
        self._base_url = base_url
        self._timeout = timeout
        self._max_attempts = max_attempts
        self._transport = transport
        self._backoff = backoff
        self._http_client: Optional[httpx.AsyncClient] = None

    @property
    def base_url(self) -> str:
        base = (self._base_url or settings.get_vmapi_base_url() or "").rstrip("/")
        if not base:
            raise RuntimeError("VMAPI_URL is not configured")
        return base

    @property
    def max_attempts(self) -> int:
        value = self._max_attempts if self._max_attempts is not None else settings.vmapi_max_attempts
        return max(1, int(value))

    async def start(self) -> None:
        """Create the underlying HTTP client."""
        self._ensure_client()

    async def stop(self) -> None:
        """Close the HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None
            logger.debug("VMAPI client closed")

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            timeout = self._timeout if self._timeout is not None else settings.vmapi_timeout
            self._http_client = httpx.AsyncClient(
                timeout=max(1.0, float(timeout)),
                transport=self._transport,
                headers={
                    "Accept": "application/json",
                    "User-Agent": f"{settings.app_name}/{settings.app_version}",
                },
            )
            logger.info("VMAPI client ready for %s", self.base_url)
        return self._http_client

    async def get_server_vms(
        self,
        server_uuid: str,
        *,
        stop_event: Optional[asyncio.Event] = None,
    ) -> Dict[str, VMRecord]:
        """Return the active VMs VMAPI currently places on this server.

        Entries VMAPI returns without a usable uuid are skipped.
        """

        description = f"VMs of server {server_uuid}"
        response = await self._with_retry(
            lambda: self._send(
                "GET",
                "/vms",
                params={"server_uuid": server_uuid, "state": "active"},
            ),
            method="GET",
            description=description,
            stop_event=stop_event,
        )

        try:
            payload: Any = response.json()
        except (json.JSONDecodeError, ValueError) as exc:
            raise SyncRejected(
                f"VMAPI returned invalid JSON for {description}",
                status_code=response.status_code,
            ) from exc

        if not isinstance(payload, list):
            raise SyncRejected(
                f"Unexpected VMAPI payload type for {description}: {type(payload).__name__}",
                status_code=response.status_code,
            )

        records: Dict[str, VMRecord] = {}
        for item in payload:
            if not isinstance(item, dict):
                continue
            try:
                record = VMRecord.model_validate(item)
            except ValidationError:
                logger.debug("Skipping unreadable VMAPI entry: %s", str(item)[:200])
                continue
            records[record.uuid] = record

        logger.debug("VMAPI lists %d active VM(s) on server %s", len(records), server_uuid)
        return records

    async def push_full_set(
        self,
        server_uuid: str,
        records: Iterable[VMRecord],
        *,
        stop_event: Optional[asyncio.Event] = None,
    ) -> SyncAck:
        """Replace the inventory API's view of every VM on this server."""

        body = [record.to_payload() for record in records]
        response = await self._with_retry(
            lambda: self._send("PUT", f"/hosts/{server_uuid}/vms", json_body=body),
            method="PUT",
            description=f"full VM set for server {server_uuid}",
            stop_event=stop_event,
        )
        return SyncAck(status_code=response.status_code, records=len(body))

    async def push_one(
        self,
        record: VMRecord,
        *,
        stop_event: Optional[asyncio.Event] = None,
    ) -> SyncAck:
        """Upsert a single VM record."""

        response = await self._with_retry(
            lambda: self._send(
                "PUT",
                f"/vms/{record.uuid}",
                json_body=record.to_payload(),
                vm_uuid=record.uuid,
            ),
            method="PUT",
            description=f"VM {record.uuid} (state={record.state})",
            stop_event=stop_event,
        )
        return SyncAck(status_code=response.status_code, records=1, vm_uuid=record.uuid)

    async def _with_retry(
        self,
        send: Callable[[], Awaitable[T]],
        *,
        method: str,
        description: str,
        stop_event: Optional[asyncio.Event],
    ) -> T:
        """Run ``send``, retrying transient failures with backoff.

        Rejections are raised immediately. Once the attempts are used up, or
        ``stop_event`` is set, the last transient error is raised.
        """

        attempts = self.max_attempts
        attempt = 0
        while True:
            attempt += 1
            try:
                return await send()
            except SyncTransient as exc:
                if attempt >= attempts:
                    raise
                if stop_event is not None and stop_event.is_set():
                    logger.info(
                        "Not retrying %s of %s; shutdown requested", method, description
                    )
                    raise
                delay = self._retry_delay(attempt)
                logger.warning(
                    "%s of %s failed (attempt %d/%d): %s; retrying in %.1fs",
                    method,
                    description,
                    attempt,
                    attempts,
                    exc.message,
                    delay,
                )
                if await sleep_unless_set(stop_event, delay):
                    raise

    def _retry_delay(self, attempt: int) -> float:
        if self._backoff is not None:
            return self._backoff(attempt)
        return compute_backoff(
            attempt, settings.retry_initial_delay, settings.retry_max_delay
        )

    async def _send(
        self,
        method: str,
        path: str,
        *,
        json_body: Any = None,
        params: Optional[Mapping[str, str]] = None,
        vm_uuid: Optional[str] = None,
    ) -> httpx.Response:
        client = self._ensure_client()
        url = f"{self.base_url}{path}"
        logger.debug("%s %s", method, url)

        try:
            response = await client.request(method, url, json=json_body, params=params)
        except httpx.TimeoutException as exc:
            raise SyncTransient(
                f"Timed out talking to VMAPI: {exc}", vm_uuid=vm_uuid
            ) from exc
        except httpx.RequestError as exc:
            raise SyncTransient(
                f"Network error talking to VMAPI: {exc}", vm_uuid=vm_uuid
            ) from exc

        kind = classify_status(response.status_code)
        if kind is None:
            logger.debug("%s %s answered %s", method, url, response.status_code)
            return response

        detail = _error_detail(response)
        message = f"VMAPI returned {response.status_code}: {detail}"
        if kind is SyncErrorKind.REJECTED:
            raise SyncRejected(message, status_code=response.status_code, vm_uuid=vm_uuid)
        raise SyncTransient(message, status_code=response.status_code, vm_uuid=vm_uuid)

    def get_metrics(self) -> Dict[str, Any]:
        return {
            "base_url": self._base_url or settings.get_vmapi_base_url(),
            "connected": self._http_client is not None,
            "max_attempts": self.max_attempts,
        }


# Global client instance
vmapi_client = VmapiClient()

__all__ = [
    "SyncAck",
    "SyncError",
    "SyncRejected",
    "SyncTransient",
    "VmapiClient",
    "classify_status",
    "vmapi_client",
]
