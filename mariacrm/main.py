from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from mariacrm.api.errors import register_exception_handlers
from mariacrm.api.routes import router as api_router
from mariacrm.core.cache import build_context_cache
from mariacrm.core.config import get_settings
from mariacrm.core.context import RequestContextMiddleware
from mariacrm.logging import configure_logging
from mariacrm.middleware.correlation_id import CorrelationIdMiddleware
from mariacrm.middleware.rate_limit import MutationRateLimitMiddleware
from mariacrm.middleware.request_logging import RequestLoggingMiddleware
from mariacrm.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("mariacrm.lifecycle")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    if settings.uses_insecure_jwt_secret and settings.app_env.lower() not in {"local", "test"}:
        logger.warning("jwt_secret.insecure_fallback", extra={"environment": settings.app_env})
    logger.info("system.started", extra={"service": settings.app_name, "environment": settings.app_env})
    yield
    app.state.context_cache.clear()


settings = get_settings()

app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)
app.state.context_cache = build_context_cache()
app.add_middleware(MutationRateLimitMiddleware)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
register_exception_handlers(app)
app.include_router(api_router)

setup_otel(settings)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
