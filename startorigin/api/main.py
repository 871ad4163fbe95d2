"""
startorigin.api.main — FastAPI application entry point
=======================================================

Run with::

    uvicorn startorigin.api.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware

load_dotenv()

from startorigin.api.auth import router as auth_router  # noqa: E402
from startorigin.api.deps import get_engine, get_live, install_error_handlers  # noqa: E402
from startorigin.api.routes.admin import router as admin_router  # noqa: E402
from startorigin.api.routes.chats import router as chats_router  # noqa: E402
from startorigin.api.routes.feeds import router as feeds_router  # noqa: E402
from startorigin.api.routes.marketplace import router as marketplace_router  # noqa: E402
from startorigin.api.routes.problems import router as problems_router  # noqa: E402
from startorigin.api.routes.profiles import router as profiles_router  # noqa: E402
from startorigin.api.routes.projects import router as projects_router  # noqa: E402
from startorigin.api.routes.shop import router as shop_router  # noqa: E402
from startorigin.services.log_buffer import install_handler  # noqa: E402

logger = logging.getLogger(__name__)


def _cors_origins() -> list[str]:
    """Resolve allowed CORS origins from env with safe defaults.

    Priority:
      1) CORS_ALLOW_ORIGINS (comma-separated)
      2) FRONTEND_URL (single origin)
    """
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if raw:
        return [origin.strip().rstrip("/") for origin in raw.split(",") if origin.strip()]

    frontend_url = os.getenv("FRONTEND_URL", "").strip()
    if frontend_url:
        return [frontend_url.rstrip("/")]

    return []


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown: attach the log buffer, warm the engine, start the
    live-change listener."""
    # Uvicorn reconfigures logging when it starts; attach after that.
    logging.getLogger().setLevel(os.getenv("LOG_LEVEL", "INFO").upper())
    install_handler()

    engine = get_engine()
    live = get_live()
    live.start()
    logger.info("StartOrigin API started (%s)", engine.url.database)
    yield
    live.stop()
    logger.info("StartOrigin API shutting down")


app = FastAPI(
    title="StartOrigin API",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
install_error_handlers(app)

# Mount routers
app.include_router(auth_router, prefix="/api")
app.include_router(profiles_router, prefix="/api")
app.include_router(problems_router, prefix="/api")
app.include_router(projects_router, prefix="/api")
app.include_router(feeds_router, prefix="/api")
app.include_router(chats_router, prefix="/api")
app.include_router(shop_router, prefix="/api")
app.include_router(marketplace_router, prefix="/api")
app.include_router(admin_router, prefix="/api")


@app.get("/api/health")
def health(live=Depends(get_live)):
    return {"status": "ok", "live": live.healthy}
