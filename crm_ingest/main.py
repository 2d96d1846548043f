from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from crm_ingest.config import Settings, get_settings
from crm_ingest.database import SessionLocal
from crm_ingest.errors import IngestError
from crm_ingest.logging_config import get_logger, setup_logging
from crm_ingest.routers import webhook
from crm_ingest.services.forwarder import Forwarder
from crm_ingest.services.profile_service import ProfileFetcher

logger = get_logger("main")

CORS_ALLOWED_HEADERS = ["authorization", "x-client-info", "apikey", "content-type", "x-secret"]


def create_app(
    settings: Optional[Settings] = None,
    forwarder: Optional[Forwarder] = None,
    profile_fetcher: Optional[ProfileFetcher] = None,
) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(settings.log_level)

    app = FastAPI(
        title="CRM Ingest",
        description="Inbound WhatsApp webhook ingestion and queue distribution",
        version="0.1.0",
        debug=settings.debug,
    )

    cors_origins = [origin.strip() for origin in settings.cors_allowed_origin.split(",") if origin.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins or ["*"],
        allow_credentials=False,
        allow_methods=["POST", "OPTIONS"],
        allow_headers=CORS_ALLOWED_HEADERS,
    )

    app.state.settings = settings
    app.state.forwarder = forwarder or Forwarder(
        timeout_seconds=settings.forward_timeout_seconds, session_factory=SessionLocal
    )
    app.state.profile_fetcher = profile_fetcher or ProfileFetcher(
        timeout_seconds=settings.profile_fetch_timeout_seconds, session_factory=SessionLocal
    )
    app.state.gateway = webhook.WebhookGateway(settings, app.state.forwarder, app.state.profile_fetcher)

    @app.exception_handler(IngestError)
    async def handle_ingest_error(request: Request, exc: IngestError):
        request_id = getattr(request.state, "request_id", None)
        return JSONResponse(exc.to_body(request_id), status_code=exc.status_code)

    @app.on_event("shutdown")
    async def drain_background_tasks() -> None:
        await app.state.forwarder.drain()
        await app.state.profile_fetcher.drain()
        logger.info("Background tasks drained")

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    app.include_router(webhook.router)
    return app


app = create_app()
