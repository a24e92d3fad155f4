"""Colaboradores explícitos de un proceso (sin singletons globales)."""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from pricewatch.config.categories import CATEGORIES, DEFAULT_SCRAPE_INTERVAL
from pricewatch.config.settings import Settings
from pricewatch.database.connection import Database, utc_now
from pricewatch.database.repository import CategoryRepository
from pricewatch.diff.engine import DiffEngine
from pricewatch.models.change import DiffRunResult
from pricewatch.models.notification import DigestSendResult, ImmediateSendResult
from pricewatch.models.product import ScrapeCategoryResult
from pricewatch.notifications.digest import send_pending_digests
from pricewatch.notifications.immediate import send_immediate_notifications
from pricewatch.notifications.transport import EmailTransport, create_email_transport
from pricewatch.scheduler.maintenance import StaleRunSweepResult, cleanup_stale_runs
from pricewatch.scrapers.anti_bot.headers import PolitenessDelay
from pricewatch.scrapers.fetcher import PageFetcher
from pricewatch.scrapers.runner import CategoryScraper
from pricewatch.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class AppContext:
    settings: Settings
    db: Database
    fetcher: PageFetcher
    transport: EmailTransport
    delay: Optional[PolitenessDelay] = None
    clock: Callable[[], datetime] = field(default=utc_now)

    def seed_categories(self) -> int:
        with self.db.transaction() as conn:
            count = CategoryRepository(conn).upsert_reference(CATEGORIES, DEFAULT_SCRAPE_INTERVAL)
        logger.info(f"Seeded {count} categories")
        return count

    def scrape(self, id_or_slug: str) -> ScrapeCategoryResult:
        scraper = CategoryScraper(
            self.db,
            self.fetcher,
            config=self.settings.scraper,
            delay=self.delay,
            clock=self.clock,
        )
        return scraper.scrape_category(str(id_or_slug))

    def send_immediate(self, change_report_id: int) -> ImmediateSendResult:
        return send_immediate_notifications(self.db, change_report_id, self.transport, clock=self.clock)

    def diff(self, scrape_run_id: int) -> DiffRunResult:
        return DiffEngine(self.db, send_immediate=self.send_immediate).run(scrape_run_id)

    def digest(self, now: Optional[datetime] = None) -> DigestSendResult:
        return send_pending_digests(
            self.db,
            self.transport,
            now=now or self.clock(),
            cooldown_hours=self.settings.notifications.digest_cooldown_hours,
        )

    def cleanup_stale(self, minutes=None) -> StaleRunSweepResult:
        return cleanup_stale_runs(
            self.db,
            minutes if minutes is not None else self.settings.scheduler.stale_run_minutes,
            now=self.clock(),
        )

    def close(self) -> None:
        self.fetcher.close()


def build_context(settings: Optional[Settings] = None) -> AppContext:
    """Validar configuración y construir los colaboradores una sola vez."""
    settings = (settings or Settings.from_env()).validate()
    db = Database(settings.database)
    db.initialize_schema()
    return AppContext(
        settings=settings,
        db=db,
        fetcher=PageFetcher(settings.scraper),
        transport=create_email_transport(settings.notifications),
    )
