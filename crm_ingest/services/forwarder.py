"""Best-effort relay of provider events to the downstream automation engine."""

import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Optional
from uuid import UUID

import httpx
from sqlalchemy.orm import Session

from crm_ingest.config import Settings
from crm_ingest.logging_config import get_logger
from crm_ingest.models import WorkspaceWebhookSettings
from crm_ingest.services.background import DetachedTasks, task_failure
from crm_ingest.services.webhook_log_service import record_forward_result

logger = get_logger("forwarder")


@dataclass(frozen=True)
class ForwardTarget:
    url: Optional[str]
    secret: Optional[str] = None
    source: str = "none"  # workspace, fallback, none

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    def headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.secret:
            headers["Authorization"] = f"Bearer {self.secret}"
        return headers


@dataclass(frozen=True)
class ForwardResult:
    """Outcome of one forwarding attempt; failures are values, never raised."""

    delivered: bool
    target: str
    status_code: Optional[int] = None
    error: Optional[str] = None
    error_code: Optional[str] = None  # no_target, forward_error, forward_rejected
    body: Optional[str] = None

    @classmethod
    def sent(cls, target: ForwardTarget, status_code: int, body: Optional[str] = None) -> "ForwardResult":
        return cls(delivered=True, target=target.source, status_code=status_code, body=body)

    @classmethod
    def failed(
        cls,
        target: ForwardTarget,
        error: str,
        error_code: str,
        status_code: Optional[int] = None,
        body: Optional[str] = None,
    ) -> "ForwardResult":
        return cls(
            delivered=False,
            target=target.source,
            status_code=status_code,
            error=error,
            error_code=error_code,
            body=body,
        )


def resolve_forward_target(db: Session, workspace_id: Optional[UUID], settings: Settings) -> ForwardTarget:
    """Per-workspace target and secret, else the global fallback."""
    if workspace_id:
        row = (
            db.query(WorkspaceWebhookSettings)
            .filter(WorkspaceWebhookSettings.workspace_id == workspace_id)
            .first()
        )
        if row and row.webhook_url:
            return ForwardTarget(url=row.webhook_url, secret=row.webhook_secret, source="workspace")

    if settings.fallback_forward_url:
        return ForwardTarget(
            url=settings.fallback_forward_url,
            secret=settings.default_forward_secret,
            source="fallback",
        )
    return ForwardTarget(url=None)


def build_forward_envelope(
    payload: dict[str, Any],
    *,
    workspace_id: Optional[UUID],
    request_id: str,
    processed_data: Optional[dict[str, Any]],
) -> dict[str, Any]:
    return {
        **payload,
        "workspace_id": str(workspace_id) if workspace_id else None,
        "source": "evolution-api",
        "forwarded_by": "n8n-response-v2",
        "request_id": request_id,
        "processed_data": processed_data,
    }


class Forwarder:
    """Dispatches forwarding calls as detached tasks.

    The request handler never awaits a dispatched task; each task carries its
    own timeout and its ForwardResult is written to webhook_logs when it ends.
    """

    def __init__(
        self,
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        session_factory: Optional[Callable[[], Session]] = None,
    ):
        self.timeout_seconds = timeout_seconds
        self._transport = transport
        self._session_factory = session_factory
        self._tasks = DetachedTasks()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def send(self, target: ForwardTarget, envelope: dict[str, Any], log=None) -> ForwardResult:
        log = log or logger
        if not target.enabled:
            return ForwardResult.failed(target, "No forwarding target configured", "no_target")

        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                response = await asyncio.wait_for(
                    client.post(target.url, json=envelope, headers=target.headers()),
                    timeout=self.timeout_seconds + 1,
                )
        except (httpx.HTTPError, asyncio.TimeoutError) as exc:
            log.error(
                "Forwarding failed",
                extra={"context": {"target": target.source, "error": str(exc) or type(exc).__name__}},
            )
            return ForwardResult.failed(target, str(exc) or type(exc).__name__, "forward_error")

        if response.is_success:
            log.info(
                "Event forwarded",
                extra={"context": {"target": target.source, "status": response.status_code}},
            )
            return ForwardResult.sent(target, response.status_code, response.text)

        log.warning(
            "Forward target rejected event",
            extra={
                "context": {
                    "target": target.source,
                    "status": response.status_code,
                    "body": response.text[:200],
                }
            },
        )
        return ForwardResult.failed(
            target, f"HTTP {response.status_code}", "forward_rejected", response.status_code, response.text
        )

    def dispatch(self, target: ForwardTarget, envelope: dict[str, Any], log=None) -> Optional[asyncio.Task]:
        """Schedule ``send`` on the running loop and return without waiting."""
        if not target.enabled:
            return None
        log = log or logger
        return self._tasks.spawn(self.send(target, envelope, log), lambda done: self._finish(done, envelope, log))

    def _finish(self, task: asyncio.Task, envelope: dict[str, Any], log) -> None:
        failure = task_failure(task)
        if failure is not None:
            log.error("Forwarding task did not complete", extra={"context": {"error": failure}})
            return
        if self._session_factory is None:
            return

        result: ForwardResult = task.result()
        record_forward_result(
            self._session_factory,
            envelope,
            delivered=result.delivered,
            response_status=result.status_code,
            response_body=result.body if result.body is not None else result.error,
            log=log,
        )

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight forwards, e.g. on shutdown."""
        await self._tasks.drain(timeout or self.timeout_seconds + 1)
