from __future__ import annotations

from contextlib import asynccontextmanager
import asyncio
import logging
import time

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from starlette.routing import Match

from app.api.router import api_router
from app.api.v1 import health
from app.config import Settings, settings
from app.core.batches.gateway import PersistenceGateway
from app.core.batches.service import BatchService
from app.core.collections.service import CollectionService
from app.core.minting.chain_client import ChainClient
from app.core.minting.dispatcher import MintDispatcher
from app.core.minting.orchestrator import BatchMintOrchestrator, MintChainClient
from app.core.minting.sweeper import mint_retry_sweep_loop
from app.core.verification.engine import WeightVerificationEngine
from app.core.verification.rewards import RewardPolicy
from app.db.session import AsyncSessionLocal, engine
from app.utils.error_codes import ERROR_MESSAGES, ErrorCode
from app.utils.exceptions import EarthxException
from app.utils.request_id import REQUEST_ID_HEADER, request_id_var, resolve_request_id


logger = logging.getLogger(__name__)


def _configure_logging() -> None:
    level = getattr(logging, str(settings.LOG_LEVEL or "INFO").upper(), logging.INFO)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    logging.getLogger().setLevel(level)


def init_app_state(
    app: FastAPI,
    *,
    session_factory: async_sessionmaker[AsyncSession],
    chain_client: MintChainClient,
    config: Settings | None = None,
) -> None:
    """Wire the domain components onto ``app.state``.

    Called from the lifespan with production collaborators and from tests with a
    throwaway database and a fake chain client.
    """
    cfg = config or settings
    gateway = PersistenceGateway(session_factory)
    orchestrator = BatchMintOrchestrator.from_settings(gateway, chain_client, cfg)
    dispatcher = MintDispatcher(orchestrator, start_delay_ms=cfg.MINT_TRIGGER_DELAY_MS)

    app.state.gateway = gateway
    app.state.chain_client = chain_client
    app.state.mint_orchestrator = orchestrator
    app.state.mint_dispatcher = dispatcher
    app.state.batch_service = BatchService(
        gateway,
        engine=WeightVerificationEngine.from_settings(gateway, cfg),
        orchestrator=orchestrator,
        dispatcher=dispatcher,
        reward_policy=RewardPolicy.from_settings(cfg),
    )
    app.state.collection_service = CollectionService.from_settings(gateway, cfg)


@asynccontextmanager
async def lifespan(app: FastAPI):
    _configure_logging()
    app.state._bg_stop_event = asyncio.Event()
    app.state._bg_tasks = []

    chain_client = ChainClient.from_settings(settings)
    init_app_state(app, session_factory=AsyncSessionLocal, chain_client=chain_client)

    if settings.MINT_RETRY_SWEEP_ENABLED and chain_client.is_configured:
        task = asyncio.create_task(
            mint_retry_sweep_loop(
                orchestrator=app.state.mint_orchestrator,
                stop_event=app.state._bg_stop_event,
                interval_seconds=settings.MINT_RETRY_SWEEP_INTERVAL_SECONDS,
            )
        )
        app.state._bg_tasks.append(task)

    try:
        yield
    finally:
        try:
            app.state._bg_stop_event.set()
        except Exception:
            pass

        try:
            await app.state.mint_dispatcher.shutdown()
        except Exception:
            logger.exception("lifespan.mint_dispatcher_shutdown_failed")

        tasks = list(getattr(app.state, "_bg_tasks", []) or [])
        if tasks:
            for t in tasks:
                t.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        app.state._bg_tasks = []

        try:
            await engine.dispose()
        except Exception:
            pass


app = FastAPI(title="EarthX Hub Backend", debug=settings.DEBUG, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origin_regex=r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$",
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    rid = resolve_request_id(request.headers.get(REQUEST_ID_HEADER))
    token = request_id_var.set(rid)
    try:
        response = await call_next(request)
    finally:
        request_id_var.reset(token)

    response.headers[REQUEST_ID_HEADER] = rid
    return response


def _route_template(request: Request) -> str | None:
    route_path = getattr(request.scope.get("route"), "path", None)
    if isinstance(route_path, str) and route_path:
        return route_path
    # Newer Starlette routers do not write the matched route back into the
    # middleware's scope; resolve it the same way the router does.
    for route in request.app.router.routes:
        match, _ = route.matches(request.scope)
        if match == Match.FULL:
            return getattr(route, "path", None)
    return None


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    if not settings.METRICS_ENABLED:
        return await call_next(request)

    start = time.perf_counter()
    response = await call_next(request)
    elapsed_s = time.perf_counter() - start

    try:
        from app.utils.metrics import HTTP_REQUESTS_TOTAL, HTTP_REQUEST_DURATION_SECONDS

        # Route templates keep label cardinality low.
        path_label = _route_template(request) or "__unmatched__"
        method = request.method
        status = str(getattr(response, "status_code", 0))

        HTTP_REQUESTS_TOTAL.labels(method=method, path=path_label, status=status).inc()
        HTTP_REQUEST_DURATION_SECONDS.labels(method=method, path=path_label).observe(elapsed_s)
    except Exception:
        pass

    return response


@app.exception_handler(EarthxException)
async def earthx_exception_handler(request: Request, exc: EarthxException):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content={
            "error": {
                "code": ErrorCode.E009.value,
                "message": ERROR_MESSAGES[ErrorCode.E009],
                "details": {"errors": jsonable_encoder(exc.errors())},
            }
        },
    )


app.include_router(api_router, prefix="/api/v1")
app.include_router(health.router, tags=["Health"])


if settings.METRICS_ENABLED:

    @app.get("/metrics")
    async def metrics():
        from app.utils.metrics import render_metrics

        payload, content_type = render_metrics()
        return Response(content=payload, media_type=content_type)
