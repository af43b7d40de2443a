from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Callable

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from storefront.api.error_handling import register_exception_handlers
from storefront.api.routes import router
from storefront.config import get_settings
from storefront.logging import bind_request_id, get_logger

logger = get_logger(__name__)

__version__ = "1.0.0"

# per dependency probe in /healthz
PROBE_TIMEOUT_SECONDS = 3.0

_SECURITY_HEADERS = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "no-referrer",
    # responses carry per-user carts and tokens
    "Cache-Control": "no-store",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    from storefront.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("storefront_started", version=__version__, port=runtime.settings.port)
    try:
        yield
    finally:
        try:
            await runtime.close()
        except Exception as exc:
            logger.error("storefront_shutdown_failed", error=str(exc))
        else:
            logger.info("storefront_stopped")


def create_app() -> FastAPI:
    settings = get_settings()
    application = FastAPI(title="Storefront API", version=__version__, lifespan=lifespan)
    application.add_middleware(
        CORSMiddleware,
        allow_origin_regex=settings.cors_allow_origin_regex,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
        expose_headers=["X-Request-ID", "Retry-After"],
        max_age=600,
    )

    @application.middleware("http")
    async def request_context(request: Request, call_next):
        request_id = bind_request_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        for name, value in _SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        return response

    register_exception_handlers(application)
    application.include_router(router)
    application.add_api_route("/healthz", health, methods=["GET"], tags=["ops"])
    return application


async def _probe(component: str, check: Callable[[], None]) -> bool:
    """Run a blocking connectivity check off the event loop with a deadline."""
    try:
        await asyncio.wait_for(asyncio.to_thread(check), PROBE_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.error("health_probe_timeout", component=component, timeout=PROBE_TIMEOUT_SECONDS)
        return False
    except Exception as exc:
        logger.error("health_probe_failed", component=component, error=str(exc))
        return False
    return True


async def health() -> JSONResponse:
    """Report whether the database and, when configured, Redis answer."""
    from storefront.service.runtime import get_runtime

    runtime = get_runtime()
    database_ok = await _probe("database", runtime.store.verify_connection)
    checks = {
        "database": {
            "status": "healthy" if database_ok else "unhealthy",
            "type": "memory" if runtime.settings.use_memory_store else "mongo",
        }
    }
    healthy = database_ok
    if runtime.cache is None:
        checks["redis"] = {"status": "not_configured"}
    else:
        redis_ok = await _probe("redis", runtime.cache.verify_connection)
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
        healthy = healthy and redis_ok

    return JSONResponse(
        status_code=200 if healthy else 503,
        content={
            "status": "healthy" if healthy else "unhealthy",
            "checks": checks,
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    )


app = create_app()


def main() -> None:
    settings = get_settings()
    uvicorn.run("storefront.app:app", host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
