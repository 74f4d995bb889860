"""Configuration and environment settings for the harvester.

Everything is collected into one :class:`HarvesterConfig` that the CLI builds
once and hands to every component.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from .partition import Partition


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class DatabaseConfig:
    host: str = "localhost"
    port: int = 5432
    dbname: str = "forumharvest"
    user: str = "forumharvest"
    password: str = "forumharvest"

    @property
    def dsn(self) -> str:
        return f"postgresql://{self.user}:{self.password}@{self.host}:{self.port}/{self.dbname}"

    @classmethod
    def from_env(cls) -> DatabaseConfig:
        return cls(
            host=os.getenv("DB_HOST", "localhost"),
            port=int(os.getenv("DB_PORT", "5432")),
            dbname=os.getenv("DB_NAME", "forumharvest"),
            user=os.getenv("DB_USER", "forumharvest"),
            password=os.getenv("DB_PASSWORD", "forumharvest"),
        )


@dataclass(frozen=True)
class S3Config:
    endpoint: str = "http://localhost:9000"
    region: str = "us-east-1"
    access_key: str = "minioadmin"
    secret_key: str = "minioadmin"
    bucket: str = "forumharvest"
    use_ssl: bool = False
    verify_tls: bool = True
    create_bucket: bool = False
    public_base_url: str = ""  # defaults to {endpoint}/{bucket}

    @property
    def url_prefix(self) -> str:
        return (self.public_base_url or f"{self.endpoint}/{self.bucket}").rstrip("/")

    @classmethod
    def from_env(cls) -> S3Config:
        endpoint = os.getenv("S3_ENDPOINT", "http://localhost:9000")
        if not endpoint.startswith(("http://", "https://")):
            endpoint = f"https://{endpoint}"
        return cls(
            endpoint=endpoint,
            region=os.getenv("S3_REGION", "us-east-1"),
            access_key=os.getenv("S3_ACCESS_KEY", "minioadmin"),
            secret_key=os.getenv("S3_SECRET_KEY", "minioadmin"),
            bucket=os.getenv("S3_BUCKET", "forumharvest"),
            use_ssl=_env_bool("S3_USE_SSL", "false"),
            verify_tls=_env_bool("S3_VERIFY_TLS", "true"),
            create_bucket=_env_bool("S3_CREATE_BUCKET", "false"),
            public_base_url=os.getenv("S3_PUBLIC_BASE_URL", ""),
        )


@dataclass(frozen=True)
class SiteConfig:
    """The forum being harvested and the account used to read it."""
    site_url: str = "https://forum.example.com"
    forum_path: str = "/forums/general.1/"
    username: str = ""
    password: str = ""
    cookies_path: str = "cookies.json"
    user_agent: str = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
    )

    @property
    def forum_url(self) -> str:
        return f"{self.site_url.rstrip('/')}{self.forum_path}"

    @classmethod
    def from_env(cls) -> SiteConfig:
        return cls(
            site_url=os.getenv("FORUM_SITE_URL", "https://forum.example.com"),
            forum_path=os.getenv("FORUM_PATH", "/forums/general.1/"),
            username=os.getenv("FORUM_USERNAME", ""),
            password=os.getenv("FORUM_PASSWORD", ""),
            cookies_path=os.getenv("FORUM_COOKIES_PATH", "cookies.json"),
        )


@dataclass(frozen=True)
class BrowserConfig:
    headless: bool = True
    executable_path: str | None = None
    launch_args: tuple[str, ...] = (
        "--no-sandbox",
        "--disable-setuid-sandbox",
        "--disable-dev-shm-usage",
        "--disable-gpu",
        "--no-first-run",
        "--no-default-browser-check",
        "--disable-background-timer-throttling",
        "--disable-renderer-backgrounding",
    )
    viewport_width: int = 1280
    viewport_height: int = 720
    profile_prefix: str = "forumharvest-"


@dataclass(frozen=True)
class CrawlConfig:
    page_attempts: int = 3
    navigation_timeout: float = 30.0  # seconds
    thread_pacing: float = 1.0  # seconds between threads
    listing_pacing: float = 2.0  # seconds between forum listing pages
    pages_before_recycle: int = 20

    @classmethod
    def from_env(cls) -> CrawlConfig:
        return cls(
            page_attempts=int(os.getenv("CRAWL_PAGE_ATTEMPTS", "3")),
            navigation_timeout=float(os.getenv("CRAWL_NAVIGATION_TIMEOUT", "30")),
            thread_pacing=float(os.getenv("CRAWL_THREAD_PACING", "1")),
            listing_pacing=float(os.getenv("CRAWL_LISTING_PACING", "2")),
            pages_before_recycle=int(os.getenv("CRAWL_PAGES_BEFORE_RECYCLE", "20")),
        )


@dataclass(frozen=True)
class PipelineConfig:
    batch_size: int = 20
    max_attempts: int = 3
    base_delay: float = 1.0
    attempt_timeout: float = 30.0
    indirect_attempt_timeout: float = 75.0  # render + asset fetch
    direct_ceiling: float = 30.0  # wall clock for one direct fetch, all attempts
    indirect_ceiling: float = 120.0  # attachment pages need an extra render
    selector_timeout: float = 10.0
    prune_stale_objects: bool = True
    verify_tls: bool = True

    @classmethod
    def from_env(cls) -> PipelineConfig:
        return cls(
            batch_size=int(os.getenv("MEDIA_BATCH_SIZE", "20")),
            max_attempts=int(os.getenv("MEDIA_MAX_ATTEMPTS", "3")),
            base_delay=float(os.getenv("MEDIA_BASE_DELAY", "1")),
            attempt_timeout=float(os.getenv("MEDIA_ATTEMPT_TIMEOUT", "30")),
            indirect_attempt_timeout=float(os.getenv("MEDIA_INDIRECT_ATTEMPT_TIMEOUT", "75")),
            direct_ceiling=float(os.getenv("MEDIA_DIRECT_CEILING", "30")),
            indirect_ceiling=float(os.getenv("MEDIA_INDIRECT_CEILING", "120")),
            selector_timeout=float(os.getenv("MEDIA_SELECTOR_TIMEOUT", "10")),
            prune_stale_objects=_env_bool("MEDIA_PRUNE_STALE", "true"),
            verify_tls=_env_bool("MEDIA_VERIFY_TLS", "true"),
        )


@dataclass(frozen=True)
class GuardianConfig:
    """Memory watchdog.  Host restarts only happen when ``watch_memory`` is on."""
    watch_memory: bool = False
    min_available_mb: int = 200
    check_interval: float = 30.0
    reboot_command: tuple[str, ...] = ("sudo", "reboot")
    reboot_grace: float = 5.0

    @classmethod
    def from_env(cls) -> GuardianConfig:
        return cls(
            watch_memory=_env_bool("GUARDIAN_WATCH_MEMORY", "false"),
            min_available_mb=int(os.getenv("GUARDIAN_MIN_AVAILABLE_MB", "200")),
            check_interval=float(os.getenv("GUARDIAN_CHECK_INTERVAL", "30")),
        )


@dataclass
class HarvesterConfig:
    db: DatabaseConfig = field(default_factory=DatabaseConfig.from_env)
    s3: S3Config = field(default_factory=S3Config.from_env)
    site: SiteConfig = field(default_factory=SiteConfig.from_env)
    browser: BrowserConfig = field(default_factory=BrowserConfig)
    crawl: CrawlConfig = field(default_factory=CrawlConfig.from_env)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig.from_env)
    guardian: GuardianConfig = field(default_factory=GuardianConfig.from_env)
    worker_index: int = 0
    worker_count: int = 1
    download_media: bool = True
    dry_run: bool = False

    def __post_init__(self) -> None:
        self.partition = Partition(self.worker_index, self.worker_count)
