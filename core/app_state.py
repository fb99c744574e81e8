"""
Mailing Workshop - Asset Upload and Export API
==============================================

Shared FastAPI application for the mailing editor backend.

Features:
- Content addressed asset uploads (local folder or S3 bucket)
- Zip export of a mailing with its remote images
- Mailing duplication including its assets
- SMTP test sends
"""

import logging
from datetime import datetime

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.gzip import GZipMiddleware

from config import config

# Setup logging
logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(),
    ]
)

# Silence noisy third-party loggers to avoid cluttering output
_noisy_loggers = [
    'httpcore',
    'httpcore.connection',
    'httpcore.http11',
    'httpx',
    'botocore',
    'aiobotocore',
    'boto3',
    's3transfer',
    'aiosmtplib',
    'multipart',
    'python_multipart',
]
for _logger_name in _noisy_loggers:
    logging.getLogger(_logger_name).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


class ArchiveAwareGZipMiddleware(GZipMiddleware):
    """GZip every response except the zip export, which is already deflated."""

    async def __call__(self, scope, receive, send):
        path = scope.get("path", "") if scope["type"] == "http" else ""
        if path.startswith("/mailings/") and path.endswith("/zip"):
            await self.app(scope, receive, send)
            return
        await super().__call__(scope, receive, send)


from filemanager_router import get_asset_store, router as filemanager_router  # noqa: E402
from mailings_router import router as mailings_router  # noqa: E402

app = FastAPI(
    title="Mailing Workshop",
    description="Asset upload, zip export and test send API for the mailing editor",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

# GZip responses > 1000 bytes, zip exports excluded
app.add_middleware(ArchiveAwareGZipMiddleware, minimum_size=1000)

if config.CORS_ORIGINS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_methods=["*"],
        allow_headers=["*"],
    )

# Routers
app.include_router(filemanager_router)
app.include_router(mailings_router)


@app.on_event("startup")
async def startup_event():
    """Create the asset store up front so configuration errors surface at boot"""
    store = get_asset_store()
    logger.info("Mailing Workshop started (asset store: %s)", store.name)


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "asset_store": config.STORAGE.backend,
        "timestamp": datetime.now().isoformat()
    }
