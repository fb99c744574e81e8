"""
Configuration for the Mailing Workshop service
==============================================

Central configuration for asset storage, mailing export, SMTP dispatch and
the HTTP server. Values come from defaults below, then from a ``.env`` file,
then from the process environment.
"""

import os
from typing import List, Literal, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

# Load environment variables from .env file
load_dotenv()

TRUTHY_VALUES = {"1", "true", "yes", "on"}


class StorageSettings(BaseModel):
    """Asset storage backend selection and upload limits."""

    backend: Literal["local", "s3"] = Field(
        default="local",
        description="Asset store implementation selected at process start",
    )
    local_root: str = Field(
        default="data/uploads",
        description="Root directory for the local asset store",
    )
    tmp_dir: str = Field(
        default="data/tmp",
        description="Directory used to spool multipart parts while hashing",
    )
    max_size_bytes: int = Field(
        default=10 * 1024 * 1024,
        gt=0,
        description="Maximum allowed size of a single uploaded part",
    )
    hash_algorithm: str = Field(
        default="md5",
        description="hashlib algorithm used to fingerprint uploaded content",
    )
    chunk_size: int = Field(
        default=64 * 1024,
        gt=0,
        description="Bytes read per chunk when streaming uploads and assets",
    )
    s3_bucket: str = Field(default="", description="Bucket holding remote assets")
    s3_region: str = Field(default="us-east-1", description="Region of the asset bucket")
    s3_endpoint_url: Optional[str] = Field(
        default=None,
        description="Custom endpoint for S3 compatible stores (MinIO, etc.)",
    )
    s3_access_key: Optional[str] = Field(default=None, description="Access key for the asset bucket")
    s3_secret_key: Optional[str] = Field(default=None, description="Secret key for the asset bucket")


class ExportSettings(BaseModel):
    """Zip export behaviour."""

    images_folder: str = Field(
        default="images",
        description="Folder (inside the archive) receiving fetched images",
    )
    fetch_timeout_seconds: float = Field(
        default=15.0,
        gt=0,
        description="Deadline for downloading one remote image completely, headers and body",
    )
    spool_memory_bytes: int = Field(
        default=1024 * 1024,
        gt=0,
        description="Bytes of a fetched image kept in memory before spooling to a temp file",
    )
    fetch_connect_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Maximum seconds to wait for establishing a remote connection",
    )
    max_concurrent_fetches: int = Field(
        default=8,
        ge=1,
        description="Remote images fetched at the same time for one export",
    )
    user_agent: str = Field(
        default="MailingWorkshop-Export/1.0",
        description="User-Agent header used for remote image fetches",
    )
    stream_queue_size: int = Field(
        default=32,
        ge=1,
        description="Archive chunks buffered before the producer waits for the client",
    )


class MailSettings(BaseModel):
    """SMTP transport used for test sends."""

    host: str = Field(default="localhost", description="SMTP server host")
    port: int = Field(default=25, description="SMTP server port")
    username: Optional[str] = Field(default=None, description="SMTP login")
    password: Optional[str] = Field(default=None, description="SMTP password")
    use_tls: bool = Field(default=False, description="Connect with implicit TLS")
    start_tls: bool = Field(default=False, description="Upgrade the connection with STARTTLS")
    timeout_seconds: float = Field(default=30.0, gt=0, description="SMTP command timeout")
    from_address: str = Field(default="mailing-workshop@localhost", description="Envelope sender")
    test_subject_prefix: str = Field(
        default="[test] ",
        description="Prepended to the mailing name in test send subjects",
    )


class MailingStoreSettings(BaseModel):
    """Bundled JSON mailing store."""

    path: str = Field(default="data/mailings.json", description="JSON document holding mailings")


def _env_int(name: str) -> Optional[int]:
    raw = os.getenv(name)
    if not raw:
        return None
    try:
        parsed = int(raw)
    except ValueError:
        return None
    return parsed if parsed > 0 else None


def _env_float(name: str) -> Optional[float]:
    raw = os.getenv(name)
    if not raw:
        return None
    try:
        parsed = float(raw)
    except ValueError:
        return None
    return parsed if parsed > 0 else None


def _env_bool(name: str) -> Optional[bool]:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return None
    return raw.lower() in TRUTHY_VALUES


class Config(BaseModel):
    """Configuration settings for the Mailing Workshop service."""

    STORAGE: StorageSettings = Field(default_factory=StorageSettings, description="Asset storage settings")
    EXPORT: ExportSettings = Field(default_factory=ExportSettings, description="Zip export settings")
    MAIL: MailSettings = Field(default_factory=MailSettings, description="SMTP settings")
    MAILINGS: MailingStoreSettings = Field(default_factory=MailingStoreSettings, description="Mailing store settings")

    APP_HOST: str = Field(default="0.0.0.0", description="FastAPI host")
    APP_PORT: int = Field(default=8000, description="FastAPI port")
    APP_RELOAD: bool = Field(default=False, description="FastAPI reload mode")
    LOG_LEVEL: str = Field(default="INFO", description="Root log level")
    CORS_ORIGINS: List[str] = Field(default_factory=list, description="Origins allowed by CORS")

    def __init__(self):
        super().__init__()
        self.load_from_environment()

    def load_from_environment(self):
        """Load configuration from environment variables."""
        backend = os.getenv("STORAGE_BACKEND")
        if backend and backend.lower() in {"local", "s3"}:
            self.STORAGE.backend = backend.lower()
        self.STORAGE.local_root = os.getenv("STORAGE_LOCAL_ROOT", self.STORAGE.local_root)
        self.STORAGE.tmp_dir = os.getenv("STORAGE_TMP_DIR", self.STORAGE.tmp_dir)

        max_size = _env_int("STORAGE_MAX_SIZE_BYTES")
        if max_size:
            self.STORAGE.max_size_bytes = max_size

        self.STORAGE.s3_bucket = os.getenv("S3_BUCKET", self.STORAGE.s3_bucket)
        self.STORAGE.s3_region = os.getenv("S3_REGION", self.STORAGE.s3_region)
        self.STORAGE.s3_endpoint_url = os.getenv("S3_ENDPOINT_URL") or self.STORAGE.s3_endpoint_url
        self.STORAGE.s3_access_key = os.getenv("AWS_ACCESS_KEY_ID") or self.STORAGE.s3_access_key
        self.STORAGE.s3_secret_key = os.getenv("AWS_SECRET_ACCESS_KEY") or self.STORAGE.s3_secret_key

        fetch_timeout = _env_float("EXPORT_FETCH_TIMEOUT_SECONDS")
        if fetch_timeout:
            self.EXPORT.fetch_timeout_seconds = fetch_timeout
        max_fetches = _env_int("EXPORT_MAX_CONCURRENT_FETCHES")
        if max_fetches:
            self.EXPORT.max_concurrent_fetches = max_fetches

        self.MAIL.host = os.getenv("SMTP_HOST", self.MAIL.host)
        smtp_port = _env_int("SMTP_PORT")
        if smtp_port:
            self.MAIL.port = smtp_port
        self.MAIL.username = os.getenv("SMTP_USERNAME") or self.MAIL.username
        self.MAIL.password = os.getenv("SMTP_PASSWORD") or self.MAIL.password
        use_tls = _env_bool("SMTP_USE_TLS")
        if use_tls is not None:
            self.MAIL.use_tls = use_tls
        start_tls = _env_bool("SMTP_START_TLS")
        if start_tls is not None:
            self.MAIL.start_tls = start_tls
        self.MAIL.from_address = os.getenv("MAIL_FROM", self.MAIL.from_address)
        self.MAIL.test_subject_prefix = os.getenv("MAIL_TEST_SUBJECT_PREFIX", self.MAIL.test_subject_prefix)

        self.MAILINGS.path = os.getenv("MAILINGS_STORE_PATH", self.MAILINGS.path)

        # FastAPI Configuration
        self.APP_HOST = os.getenv("APP_HOST", self.APP_HOST)
        app_port = _env_int("APP_PORT")
        if app_port:
            self.APP_PORT = app_port
        app_reload = _env_bool("APP_RELOAD")
        if app_reload is not None:
            self.APP_RELOAD = app_reload

        cors_origins = os.getenv("CORS_ORIGINS")
        if cors_origins:
            self.CORS_ORIGINS = [origin.strip() for origin in cors_origins.split(",") if origin.strip()]

        # Logging
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", self.LOG_LEVEL).upper()


# Global configuration instance
config = Config()
