from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException
import httpx
import logging
from contextlib import asynccontextmanager
from typing import Optional

from .config import Settings, settings as default_settings
from .credentials import build_credential_resolver, build_session_resolver
from .database import init_database
from .errors import GatewayError, RegistryFailure
from .forwarder import Forwarder, build_timeout
from .gateway import Gateway
from .rate_limit import RateLimiter, RateLimitGate
from .redis_client import close_redis, connect_redis
from .registry import RegistryStore, SqlRegistryStore
from .usage import UsageRecorder
from .apis import router as apis_router
from .health import router as health_router
from .keys import router as keys_router
from .proxy import router as proxy_router

logger = logging.getLogger(__name__)


def configure_logging(level: str):
    logging.basicConfig(level=level.upper(), format='%(asctime)s - %(levelname)s - %(message)s')


def create_app(
    settings: Optional[Settings] = None,
    *,
    store: Optional[RegistryStore] = None,
    redis_client=None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    """
    Build the gateway app. Connections are opened in the lifespan; pass
    ``store``, ``redis_client`` or ``http_client`` to use existing ones (the
    app then leaves closing them to the caller).
    """
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine = None
        owned_redis = redis_client is None
        owned_http = http_client is None

        registry = store
        if registry is None:
            engine, session_factory = await init_database(settings)
            registry = SqlRegistryStore(session_factory)
        redis = redis_client if redis_client is not None else await connect_redis(settings)
        client = http_client if http_client is not None else httpx.AsyncClient(timeout=build_timeout(settings))

        usage = UsageRecorder(registry, max_queue=settings.USAGE_QUEUE_SIZE, batch_size=settings.USAGE_BATCH_SIZE)
        app.state.settings = settings
        app.state.redis = redis
        app.state.sessions = build_session_resolver(settings, redis)
        app.state.gateway = Gateway(
            settings=settings,
            store=registry,
            credentials=build_credential_resolver(settings, registry, redis),
            rate_limits=RateLimitGate(RateLimiter(redis), settings),
            forwarder=Forwarder(client),
            usage=usage,
        )
        usage.start()
        logger.info(f"Gateway ready ({settings.ENVIRONMENT}, auth mode {settings.AUTH_MODE}).")

        try:
            yield
        finally:
            await usage.stop()
            if owned_http:
                await client.aclose()
            if owned_redis:
                await close_redis(redis)
            if engine is not None:
                await engine.dispose()
            logger.info("Gateway shut down.")

    configure_logging(settings.LOG_LEVEL)

    app = FastAPI(title="apihub", lifespan=lifespan)
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.HOME_URL],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=exc.headers)

    # database driver errors surface as SQLAlchemyError or, for dropped connections, OSError
    @app.exception_handler(SQLAlchemyError)
    @app.exception_handler(OSError)
    async def registry_error_handler(request: Request, exc: Exception):
        logger.error(f"Registry failure on {request.method} {request.url.path}: {exc}", exc_info=exc)
        return await gateway_error_handler(request, RegistryFailure(str(exc)))

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=exc)
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": str(exc.detail)},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=422,
            content={"error": "Validation failed", "message": jsonable_errors(exc)},
        )

    app.include_router(health_router)
    app.include_router(keys_router)
    app.include_router(apis_router)
    app.include_router(proxy_router)

    return app


def jsonable_errors(exc: RequestValidationError):
    return [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg", "")}
        for error in exc.errors()
    ]


app = create_app()
