"""Webhook gateway: one endpoint shared by the WhatsApp provider and the automation engine."""

import hmac
import json
import random
import secrets
import string
import time
from enum import Enum
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from crm_ingest.config import Settings
from crm_ingest.database import get_db
from crm_ingest.errors import BadRequestError, IngestError, MethodNotAllowedError, StoreError, UnauthorizedError
from crm_ingest.logging_config import bind_request
from crm_ingest.schemas.responses import WebhookResponse
from crm_ingest.services.automation_service import handle_automation_message
from crm_ingest.services.forwarder import Forwarder, build_forward_envelope
from crm_ingest.services.payload_normalizer import parse_automation_request, parse_provider_event
from crm_ingest.services.profile_service import ProfileFetcher
from crm_ingest.services.provider_ingest import ingest_provider_event

WEBHOOK_PATH = "/webhook"

router = APIRouter()

_ID_ALPHABET = string.ascii_lowercase + string.digits


class Caller(str, Enum):
    PROVIDER = "provider"
    AUTOMATION = "automation"
    ANONYMOUS = "anonymous"


REQUEST_ID_PREFIX = {Caller.PROVIDER: "evo", Caller.AUTOMATION: "n8n", Caller.ANONYMOUS: "n8n"}


def generate_request_id(prefix: str = "req") -> str:
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"{prefix}_{int(time.time() * 1000)}_{suffix}"


def _matches(provided: Optional[str], expected: Optional[str]) -> bool:
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


class WebhookGateway:
    """Authenticates the caller and routes the body to its processing path."""

    def __init__(
        self,
        settings: Settings,
        forwarder: Forwarder,
        profiles: Optional[ProfileFetcher] = None,
        rng: Optional[random.Random] = None,
    ):
        self.settings = settings
        self.forwarder = forwarder
        self.profiles = profiles
        self.rng = rng

    def authenticate(self, headers) -> Caller:
        if _matches(headers.get("X-Secret"), self.settings.provider_secret):
            return Caller.PROVIDER
        token = self.settings.automation_token
        if token and _matches(headers.get("Authorization"), f"Bearer {token}"):
            return Caller.AUTOMATION
        return Caller.ANONYMOUS

    async def handle(self, request: Request, db: Session) -> JSONResponse:
        caller = self.authenticate(request.headers)
        request_id = generate_request_id(REQUEST_ID_PREFIX[caller])
        request.state.request_id = request_id
        log = bind_request("webhook", request_id)
        log.info(
            "Webhook request received",
            extra={
                "context": {
                    "caller": caller.value,
                    "has_secret": bool(request.headers.get("X-Secret")),
                    "authorization": "[REDACTED]" if request.headers.get("Authorization") else None,
                    "user_agent": request.headers.get("User-Agent"),
                }
            },
        )

        if caller is Caller.ANONYMOUS:
            if self.settings.enforce_auth:
                log.warning("Unauthorized webhook call rejected")
                raise UnauthorizedError(
                    "Unauthorized",
                    message="This endpoint accepts calls from the provider (X-Secret) or automation (Authorization)",
                )
            log.warning("Unauthenticated webhook call accepted, enforcement disabled")

        payload = await self._read_json(request)

        try:
            if caller is Caller.PROVIDER:
                body = await self._handle_provider(payload, db, request_id, log)
                return JSONResponse(body.to_body(), status_code=200)

            automation_request = parse_automation_request(payload)
            body = handle_automation_message(
                db,
                automation_request,
                request_id=request_id,
                idempotent_insert=self.settings.enable_message_idempotency,
                log=log,
            )
            status_code = 201 if body.action == "created" else 200
            return JSONResponse(body.to_body(), status_code=status_code)
        except IngestError as e:
            log.warning("Webhook rejected", extra={"context": {"error": e.error, "status": e.status_code}})
            raise
        except Exception as e:
            log.exception("Unexpected webhook failure")
            db.rollback()
            raise StoreError("Internal server error", details=str(e)) from e

    async def _read_json(self, request: Request) -> dict:
        raw = await request.body()
        try:
            payload = json.loads(raw)
        except (ValueError, UnicodeDecodeError) as e:
            raise BadRequestError("Invalid JSON payload", details=str(e)) from e
        if not isinstance(payload, dict):
            raise BadRequestError("Invalid payload format")
        return payload

    async def _handle_provider(self, payload: dict, db: Session, request_id: str, log) -> WebhookResponse:
        event = parse_provider_event(payload)
        outcome = ingest_provider_event(
            db,
            event,
            payload,
            settings=self.settings,
            request_id=request_id,
            idempotent_insert=self.settings.enable_message_idempotency,
            rng=self.rng,
            log=log,
        )
        processed = outcome.processed

        if outcome.duplicate:
            return WebhookResponse(
                action="duplicate_skipped",
                message_id=processed.message_id,
                workspace_id=processed.workspace_id,
                conversation_id=processed.conversation_id,
                instance=processed.instance,
                phone_number=processed.phone_number,
                requestId=request_id,
            )

        if self.profiles is not None:
            self.profiles.dispatch(outcome.profile_lookup, log)

        target = outcome.target
        if target is not None and target.enabled:
            envelope = build_forward_envelope(
                payload,
                workspace_id=outcome.workspace_id,
                request_id=request_id,
                processed_data=processed.to_dict() if processed else None,
            )
            self.forwarder.dispatch(target, envelope, log)

        if processed is None:
            return WebhookResponse(
                action="processed_and_forwarded",
                workspace_id=outcome.workspace_id,
                instance=event.instance,
                message=outcome.skipped_reason,
                requestId=request_id,
            )
        return WebhookResponse(
            action="processed_and_forwarded",
            message_id=processed.message_id,
            workspace_id=processed.workspace_id,
            conversation_id=processed.conversation_id,
            contact_id=processed.contact_id,
            connection_id=processed.connection_id,
            instance=processed.instance,
            phone_number=processed.phone_number,
            requestId=request_id,
        )


def get_gateway(request: Request) -> WebhookGateway:
    return request.app.state.gateway


@router.options(WEBHOOK_PATH)
async def webhook_preflight():
    return Response(status_code=200)


@router.post(WEBHOOK_PATH)
async def receive_webhook(
    request: Request,
    db: Session = Depends(get_db),
    gateway: WebhookGateway = Depends(get_gateway),
):
    """Single entry point for provider events and automation-engine messages."""
    return await gateway.handle(request, db)


@router.api_route(WEBHOOK_PATH, methods=["GET", "PUT", "PATCH", "DELETE"], include_in_schema=False)
async def reject_method(request: Request):
    request.state.request_id = generate_request_id()
    raise MethodNotAllowedError("METHOD_NOT_ALLOWED", message="Only POST method is allowed")
