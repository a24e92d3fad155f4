"""Configuración global del sistema."""
import os
from dataclasses import dataclass, field
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

# Paths
BASE_DIR = Path(__file__).parent.parent.parent
DATA_DIR = Path(os.getenv("PRICEWATCH_DATA_DIR", BASE_DIR / "data"))
LOG_DIR = DATA_DIR / "logs"
DB_PATH = DATA_DIR / "database.db"

# Crear directorios si no existen
DATA_DIR.mkdir(parents=True, exist_ok=True)
LOG_DIR.mkdir(exist_ok=True)


class ConfigurationError(RuntimeError):
    """Configuración inválida o incompleta."""


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}")


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {value!r}")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in ("1", "true", "yes")


@dataclass
class ScraperConfig:
    """Configuración para scrapers."""

    base_url: str = "https://mabrik.ee"
    user_agent: str = "MabrikScraper/1.0 (+https://mabrik.ee)"

    # Timeouts
    request_timeout: float = 15.0

    # Retry con backoff exponencial: base * 2^intento
    max_retries: int = 3
    retry_base_delay: float = 0.25

    # Pausa aleatoria entre páginas (cortesía)
    min_delay_seconds: float = 1.0
    max_delay_seconds: float = 2.0

    # Límites de seguridad
    max_pages: int = 200
    parser_warning_limit: int = 5

    # Headers rotation
    rotate_user_agent: bool = False

    # Transacción de persistencia
    persist_max_wait: float = 10.0
    persist_timeout: float = 60.0

    @classmethod
    def from_env(cls) -> "ScraperConfig":
        return cls(
            base_url=os.getenv("SCRAPER_BASE_URL", cls.base_url),
            user_agent=os.getenv("SCRAPER_USER_AGENT", cls.user_agent),
            request_timeout=_env_float("SCRAPER_REQUEST_TIMEOUT", cls.request_timeout),
            max_retries=_env_int("SCRAPER_RETRY_COUNT", cls.max_retries),
            retry_base_delay=_env_float("SCRAPER_RETRY_BASE_DELAY", cls.retry_base_delay),
            min_delay_seconds=_env_float("SCRAPER_MIN_DELAY", cls.min_delay_seconds),
            max_delay_seconds=_env_float("SCRAPER_MAX_DELAY", cls.max_delay_seconds),
            max_pages=_env_int("SCRAPER_MAX_PAGES", cls.max_pages),
            parser_warning_limit=_env_int("SCRAPER_PARSER_WARNING_LIMIT", cls.parser_warning_limit),
            rotate_user_agent=_env_bool("SCRAPER_ROTATE_USER_AGENT", cls.rotate_user_agent),
            persist_max_wait=_env_float("SCRAPER_PERSIST_MAX_WAIT", cls.persist_max_wait),
            persist_timeout=_env_float("SCRAPER_PERSIST_TIMEOUT", cls.persist_timeout),
        )


@dataclass
class DatabaseConfig:
    """Configuración de base de datos."""

    db_path: str = str(DB_PATH)
    busy_timeout: float = 30.0

    @classmethod
    def from_env(cls) -> "DatabaseConfig":
        return cls(db_path=os.getenv("DATABASE_PATH", cls.db_path))


@dataclass
class NotificationConfig:
    """Configuración de envío de notificaciones."""

    email_provider: str = "smtp"  # "smtp" | "resend"
    email_from: str = "no-reply@example.com"
    smtp_host: str | None = None
    smtp_port: int | None = None
    smtp_user: str | None = None
    smtp_password: str | None = None
    resend_api_key: str | None = None
    resend_api_url: str = "https://api.resend.com/emails"
    send_timeout: float = 20.0

    # Usuarios free reciben como máximo un digest cada N horas
    digest_cooldown_hours: int = 6

    @classmethod
    def from_env(cls) -> "NotificationConfig":
        port = os.getenv("SMTP_PORT")
        return cls(
            email_provider=os.getenv("EMAIL_PROVIDER", cls.email_provider).lower(),
            email_from=os.getenv("EMAIL_FROM", cls.email_from),
            smtp_host=os.getenv("SMTP_HOST") or None,
            smtp_port=_env_int("SMTP_PORT", 0) if port else None,
            smtp_user=os.getenv("SMTP_USER") or None,
            smtp_password=os.getenv("SMTP_PASS") or None,
            resend_api_key=os.getenv("RESEND_API_KEY") or None,
            send_timeout=_env_float("EMAIL_SEND_TIMEOUT", cls.send_timeout),
            digest_cooldown_hours=_env_int("DIGEST_COOLDOWN_HOURS", cls.digest_cooldown_hours),
        )


@dataclass
class SchedulerConfig:
    """Configuración del scheduler."""

    timezone: str = "Europe/Tallinn"
    scrape_check_minutes: int = 15
    digest_interval_minutes: int = 60
    stale_check_minutes: int = 10
    stale_run_minutes: int = 30
    max_instances: int = 1  # Evitar ejecuciones simultáneas

    @classmethod
    def from_env(cls) -> "SchedulerConfig":
        return cls(
            timezone=os.getenv("SCHEDULER_TIMEZONE", cls.timezone),
            scrape_check_minutes=_env_int("SCHEDULER_SCRAPE_CHECK_MINUTES", cls.scrape_check_minutes),
            digest_interval_minutes=_env_int("SCHEDULER_DIGEST_MINUTES", cls.digest_interval_minutes),
            stale_check_minutes=_env_int("SCHEDULER_STALE_CHECK_MINUTES", cls.stale_check_minutes),
            stale_run_minutes=_env_int("SCHEDULER_STALE_RUN_MINUTES", cls.stale_run_minutes),
        )


@dataclass
class Settings:
    """Agrupa todas las configuraciones de un proceso."""

    scraper: ScraperConfig = field(default_factory=ScraperConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            scraper=ScraperConfig.from_env(),
            database=DatabaseConfig.from_env(),
            notifications=NotificationConfig.from_env(),
            scheduler=SchedulerConfig.from_env(),
        )

    def validate(self) -> "Settings":
        """Validar parámetros requeridos. Falla al inicio del proceso."""
        scraper = self.scraper
        if not 0 <= scraper.max_retries <= 5:
            raise ConfigurationError("SCRAPER_RETRY_COUNT must be between 0 and 5")
        if scraper.min_delay_seconds < 0:
            raise ConfigurationError("SCRAPER_MIN_DELAY must not be negative")
        if scraper.max_delay_seconds < scraper.min_delay_seconds:
            raise ConfigurationError(
                "SCRAPER_MAX_DELAY must be greater than or equal to SCRAPER_MIN_DELAY"
            )
        if scraper.max_pages <= 0:
            raise ConfigurationError("SCRAPER_MAX_PAGES must be a positive integer")

        notifications = self.notifications
        if notifications.email_provider not in ("smtp", "resend"):
            raise ConfigurationError(
                f"EMAIL_PROVIDER must be 'smtp' or 'resend', got {notifications.email_provider!r}"
            )
        if notifications.email_provider == "resend" and not notifications.resend_api_key:
            raise ConfigurationError("RESEND_API_KEY is required when EMAIL_PROVIDER=resend")

        if notifications.digest_cooldown_hours <= 0:
            raise ConfigurationError("DIGEST_COOLDOWN_HOURS must be a positive integer")

        if self.scheduler.stale_run_minutes <= 0:
            raise ConfigurationError("SCHEDULER_STALE_RUN_MINUTES must be a positive integer")
        return self


# Environment variables
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
