import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

from app.core.client_key import ClientKeyMiddleware
from app.core.config import settings
from app.core.llm import setup_langfuse
from app.core.rate_limit import get_rate_limiter
from app.db import engine, ensure_schema
from app.routes.auth import router as auth_router
from app.routes.explain import router as explain_router
from app.routes.generate import router as generate_router
from app.routes.quiz_tests import router as tests_router
from app.routes.user_state import router as user_state_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        await ensure_schema()
    except Exception:
        # Requests retry the bootstrap; the throttle fails open meanwhile
        logger.error("Storage schema bootstrap failed at startup", exc_info=True)

    if settings.environment == "production" and not settings.google_client_id:
        raise RuntimeError("GOOGLE_CLIENT_ID must be set in production!")

    setup_langfuse()

    yield

    await get_rate_limiter().drain()
    await engine.dispose()


app = FastAPI(
    title="Selftest API",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs" if settings.is_development else None,
    redoc_url="/redoc" if settings.is_development else None,
)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        if not settings.debug:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response


app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(ClientKeyMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type"],
    expose_headers=["X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset"],
)

app.include_router(generate_router, prefix="/api")
app.include_router(explain_router, prefix="/api")
app.include_router(tests_router, prefix="/api")
app.include_router(auth_router, prefix="/api")
app.include_router(user_state_router, prefix="/api")


@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    if settings.debug:
        raise exc
    logger.exception("Unhandled exception: %s", exc)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


@app.get("/api/health")
async def health():
    return {"status": "ok"}
