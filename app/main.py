import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .core.config import settings
from .core.database import close_pool, get_pool
from .core.logging_config import setup_logging
from .routers import admin, departments

setup_logging(settings.log_level)
log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await get_pool()  # Warm pool on startup
    log.info("Allocation reports backend started")
    yield
    await close_pool()


app = FastAPI(
    title="Allocation Reports Backend",
    version="1.0.0",
    lifespan=lifespan,
)

DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    "http://localhost:5173",
]
# Preview deployments on Cloud Run
RUN_APP_ORIGIN_REGEX = r"https://.*run\.app"

configured_origins = settings.cors_origins or []
if "*" in configured_origins:
    allowed_origins = ["*"]
else:
    allowed_origins = list(dict.fromkeys(configured_origins + DEFAULT_CORS_ORIGINS))

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_origin_regex=RUN_APP_ORIGIN_REGEX,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


app.include_router(departments.router, prefix=settings.api_prefix, tags=["departments"])
app.include_router(admin.router, prefix=settings.api_prefix, tags=["admin"])


@app.get("/health")
async def health():
    return {"status": "ok"}
