"""Gatekeeper FastAPI service for Pipedrive webhooks and OAuth."""

import datetime
from contextlib import asynccontextmanager

import asyncpg
import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from connectors.pipedrive.pipedrive_errors import PipedriveError
from connectors.pipedrive.pipedrive_events import PipedriveEventBus
from connectors.pipedrive.pipedrive_merge_detection import (
    MergeTrackingStore,
    PipedriveMergeDetectionService,
    RedisMergeTrackingStore,
)
from connectors.pipedrive.pipedrive_settings import PipedriveSettings
from connectors.pipedrive.pipedrive_webhook_handler import PipedriveWebhookVerifier
from src.clients import redis as redis_client
from src.ingest.gatekeeper.authorization import (
    DashboardAuthorizationGate,
    IdentityPredicate,
    make_allow_list_predicate,
)
from src.ingest.gatekeeper.oauth_routes import router as oauth_router
from src.ingest.gatekeeper.routes import create_webhook_router
from src.ingest.gatekeeper.services.webhook_processor import PipedriveWebhookProcessor
from src.ingest.services.pipedrive_auth import PipedriveAuthService
from src.ingest.services.pipedrive_entity_store import (
    InMemoryPipedriveEntityStore,
    PipedriveEntityStore,
    PostgresPipedriveEntityStore,
)
from src.ingest.services.pipedrive_token_storage import (
    InMemoryTokenStorage,
    PostgresTokenStorage,
    TokenStorage,
)
from src.utils.config import get_config_value, get_config_value_str, get_database_url
from src.utils.logging import get_logger, get_uvicorn_log_config

logger = get_logger(__name__)


def _install_components(
    app: FastAPI,
    store: PipedriveEntityStore,
    token_storage: TokenStorage,
    tracking_store: MergeTrackingStore | None,
    http_client: httpx.AsyncClient | None,
) -> None:
    """Build the request-path services and publish them on app.state."""
    settings: PipedriveSettings = app.state.settings
    event_bus: PipedriveEventBus = app.state.event_bus

    verifier = PipedriveWebhookVerifier(settings.security)
    merge_detector = PipedriveMergeDetectionService(
        settings.merge_detection, tracking_store=tracking_store
    )

    app.state.entity_store = store
    app.state.token_storage = token_storage
    app.state.webhook_verifier = verifier
    app.state.merge_detector = merge_detector
    app.state.webhook_processor = PipedriveWebhookProcessor(
        settings, store, event_bus, merge_detector=merge_detector
    )
    app.state.auth_service = PipedriveAuthService(
        settings.oauth, token_storage, http_client=http_client
    )
    app.state.authorization_gate = DashboardAuthorizationGate(
        is_local=settings.is_local,
        identity_predicate=app.state.identity_predicate,
        verifier=verifier,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Connect the configured durable backends on startup and release them on shutdown."""
    logger.info("🚀 Starting Gatekeeper service...")
    settings: PipedriveSettings = app.state.settings
    injected = app.state.injected_backends

    db_pool: asyncpg.Pool | None = None
    store = app.state.entity_store
    token_storage = app.state.token_storage
    tracking_store = app.state.merge_detector.tracking_store
    owns_redis = False

    needs_postgres = (
        settings.backends.entity_store == "postgres" and "store" not in injected
    ) or (settings.backends.token_storage == "postgres" and "token_storage" not in injected)
    if needs_postgres:
        db_pool = await asyncpg.create_pool(get_database_url(), min_size=1, max_size=10)
        if settings.backends.entity_store == "postgres" and "store" not in injected:
            store = PostgresPipedriveEntityStore(db_pool)
            await store.ensure_schema()
        if settings.backends.token_storage == "postgres" and "token_storage" not in injected:
            token_storage = PostgresTokenStorage(db_pool)
            await token_storage.ensure_schema()

    if settings.backends.merge_tracking == "redis" and "tracking_store" not in injected:
        tracking_store = RedisMergeTrackingStore(
            await redis_client.get_client(), settings.merge_detection.window_seconds
        )
        owns_redis = True

    http_client = app.state.http_client
    owns_http_client = http_client is None
    if owns_http_client:
        http_client = httpx.AsyncClient(timeout=settings.request_timeout_seconds)
        app.state.http_client = http_client

    app.state.db_pool = db_pool
    _install_components(app, store, token_storage, tracking_store, http_client)
    logger.info(
        "✅ Gatekeeper service startup complete",
        webhook_path=settings.webhook_path,
        entity_store=settings.backends.entity_store,
        token_storage=settings.backends.token_storage,
        merge_tracking=settings.backends.merge_tracking,
    )

    yield

    logger.info("🛑 Shutting down Gatekeeper service...")
    if owns_http_client:
        await http_client.aclose()
    if owns_redis:
        await redis_client.close()
    if db_pool is not None:
        app.state.db_pool = None
        await db_pool.close()
    logger.info("✅ Gatekeeper service shutdown complete")


async def _check_components(app: FastAPI) -> dict[str, str]:
    settings: PipedriveSettings = app.state.settings
    components: dict[str, str] = {}

    db_pool: asyncpg.Pool | None = app.state.db_pool
    if db_pool is not None:
        try:
            await db_pool.fetchval("SELECT 1")
            components["postgres"] = "healthy"
        except (asyncpg.PostgresError, OSError) as e:
            components["postgres"] = f"unhealthy: {e}"

    if settings.backends.merge_tracking == "redis":
        healthy = await redis_client.ping()
        components["redis"] = "healthy" if healthy else "unhealthy: ping failed"

    components["oauth"] = "configured" if settings.oauth.is_configured else "not configured"
    return components


async def pipedrive_error_handler(request: Request, exc: PipedriveError) -> JSONResponse:
    logger.warning(
        "Pipedrive request failed",
        path=request.url.path,
        error_code=exc.code,
        error=exc.message,
        status_code=exc.status_code,
    )
    return JSONResponse(
        status_code=exc.status_code, content={"error": exc.code, "message": exc.message}
    )


def create_app(
    settings: PipedriveSettings | None = None,
    *,
    store: PipedriveEntityStore | None = None,
    token_storage: TokenStorage | None = None,
    tracking_store: MergeTrackingStore | None = None,
    identity_predicate: IdentityPredicate | None = None,
    event_bus: PipedriveEventBus | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> FastAPI:
    """Build the gatekeeper app.

    Settings are read from the environment when not given; invalid settings raise
    ConfigError here, before the app serves anything. In-memory backends are wired
    immediately, durable ones (postgres, redis) are connected by the lifespan.
    """
    settings = settings or PipedriveSettings.from_env()

    if settings.disable_webhook_validation:
        logger.warning(
            "⚠️ DANGEROUSLY_DISABLE_WEBHOOK_VALIDATION is enabled. "
            "Pipedrive webhook credentials will NOT be verified!"
        )
    if not settings.security.any_enabled:
        logger.warning("No Pipedrive webhook security configured; every delivery will be accepted")

    app = FastAPI(
        title="Pipedrive Gatekeeper",
        description="Pipedrive webhook ingestion with credential verification, merge detection and OAuth",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.event_bus = event_bus or PipedriveEventBus()
    app.state.identity_predicate = identity_predicate or make_allow_list_predicate(
        settings.dashboard
    )
    app.state.http_client = http_client
    app.state.db_pool = None
    app.state.dangerously_disable_webhook_validation = settings.disable_webhook_validation
    app.state.injected_backends = frozenset(
        name
        for name, value in (
            ("store", store),
            ("token_storage", token_storage),
            ("tracking_store", tracking_store),
        )
        if value is not None
    )
    _install_components(
        app,
        store or InMemoryPipedriveEntityStore(),
        token_storage or InMemoryTokenStorage(),
        tracking_store,
        http_client,
    )

    app.add_exception_handler(PipedriveError, pipedrive_error_handler)

    @app.get("/health/live")
    async def liveness_check():
        """Liveness probe endpoint - checks if the application is alive."""
        return {"status": "alive", "timestamp": datetime.datetime.now().isoformat()}

    @app.get("/health/ready")
    async def readiness_check():
        """Readiness probe - 503 while a configured durable backend is unreachable."""
        components = await _check_components(app)
        if any(value.startswith("unhealthy") for value in components.values()):
            logger.warning("Readiness check failed", components=components)
            raise HTTPException(
                status_code=503, detail={"status": "not_ready", "components": components}
            )
        return {"status": "ready", "components": components}

    app.include_router(create_webhook_router(settings.webhook_path))
    app.include_router(oauth_router)
    return app


def main() -> None:
    """Run the gatekeeper service.

    The IP allow-list checks the peer address uvicorn reports. Behind a load
    balancer set FORWARDED_ALLOW_IPS to the balancer addresses so that
    X-Forwarded-For from those hosts (and only those) replaces the peer address.
    """
    import uvicorn

    port = int(get_config_value("GATEKEEPER_PORT", 8001))
    uvicorn.run(
        "src.ingest.gatekeeper.main:create_app",
        factory=True,
        host="0.0.0.0",
        port=port,
        proxy_headers=True,
        forwarded_allow_ips=get_config_value_str("FORWARDED_ALLOW_IPS", "127.0.0.1"),
        log_config=get_uvicorn_log_config(),
    )


if __name__ == "__main__":
    main()
