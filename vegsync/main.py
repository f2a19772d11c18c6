from contextlib import asynccontextmanager
import structlog
from fastapi import FastAPI
from .logging import setup_logging
from .cache_layer import CacheLayer
from .config import settings
from .db import get_conn, migrate
from .api.routes import router as api_router

log = structlog.get_logger()

@asynccontextmanager
async def lifespan(app: FastAPI):
    conn = get_conn(settings.db_path)
    try:
        migrate(conn)
    finally:
        conn.close()
    log.info("service_started", db_path=settings.db_path, default_statuses=settings.default_statuses())
    yield
    app.state.region_cache.invalidate_all()

setup_logging()
app = FastAPI(title="vegsync", lifespan=lifespan)
# Shared by request handlers and background syncs for region name lookups.
app.state.region_cache = CacheLayer()
app.include_router(api_router)
