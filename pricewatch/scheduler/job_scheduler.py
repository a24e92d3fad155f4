"""Scheduler para automatización de scraping, digest y limpieza."""
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.interval import IntervalTrigger
import pytz

from pricewatch.context import AppContext
from pricewatch.database.repository import CategoryRepository
from pricewatch.models.product import ScrapeStatus
from pricewatch.utils.logger import get_logger

logger = get_logger(__name__)


class PipelineScheduler:
    """Ejecuta los jobs periódicos del pipeline en un solo proceso."""

    def __init__(self, context: AppContext):
        self.context = context
        self.config = context.settings.scheduler
        self.timezone = pytz.timezone(self.config.timezone)
        self.scheduler = BlockingScheduler(timezone=self.timezone)
        self.logger = logger

    def scrape_due_categories(self) -> list[dict]:
        """Scrapear de forma secuencial las categorías vencidas y encadenar el diff."""
        with self.context.db.get_connection() as conn:
            due = CategoryRepository(conn).list_due(self.context.clock())

        if not due:
            self.logger.debug("No categories due for scraping")
            return []

        self.logger.info(f"Starting scheduled scraping for: {[c.slug for c in due]}")
        results = []
        for category in due:
            try:
                scrape = self.context.scrape(category.slug)
            except Exception as e:
                # La corrida ya quedó FAILED; seguir con las demás categorías
                self.logger.error(f"Error scraping {category.slug}: {e}")
                results.append({"category": category.slug, "status": ScrapeStatus.FAILED.value, "error": str(e)})
                continue

            entry = {"category": category.slug, "status": scrape.status.value, "scrape_run_id": scrape.scrape_run_id}
            try:
                diff = self.context.diff(scrape.scrape_run_id)
                entry["change_report_id"] = diff.change_report_id
                entry["total_changes"] = diff.total_changes
            except Exception as e:
                self.logger.error(f"Error running diff for run {scrape.scrape_run_id}: {e}")
                entry["diff_error"] = str(e)
            results.append(entry)

        return results

    def send_digests(self):
        try:
            self.context.digest()
        except Exception as e:
            self.logger.error(f"Error sending digests: {e}")

    def cleanup_stale_runs(self):
        try:
            self.context.cleanup_stale(self.config.stale_run_minutes)
        except Exception as e:
            self.logger.error(f"Error during stale run cleanup: {e}")

    def add_scraping_job(self, interval_minutes: int = None):
        """Agregar job que revisa categorías vencidas."""
        if interval_minutes is None:
            interval_minutes = self.config.scrape_check_minutes

        self.scheduler.add_job(
            func=self.scrape_due_categories,
            trigger=IntervalTrigger(minutes=interval_minutes),
            id="scraping_job",
            name="Scraping de categorías vencidas",
            replace_existing=True,
            max_instances=self.config.max_instances
        )
        self.logger.info(f"Scraping job scheduled every {interval_minutes} minutes")

    def add_digest_job(self, interval_minutes: int = None):
        if interval_minutes is None:
            interval_minutes = self.config.digest_interval_minutes

        self.scheduler.add_job(
            func=self.send_digests,
            trigger=IntervalTrigger(minutes=interval_minutes),
            id="digest_job",
            name="Digest de notificaciones",
            replace_existing=True,
            max_instances=self.config.max_instances
        )
        self.logger.info(f"Digest job scheduled every {interval_minutes} minutes")

    def add_cleanup_job(self, interval_minutes: int = None):
        """Agregar job de limpieza de corridas colgadas."""
        if interval_minutes is None:
            interval_minutes = self.config.stale_check_minutes

        self.scheduler.add_job(
            func=self.cleanup_stale_runs,
            trigger=IntervalTrigger(minutes=interval_minutes),
            id="cleanup_job",
            name="Limpieza de corridas colgadas",
            replace_existing=True,
            max_instances=self.config.max_instances
        )
        self.logger.info(f"Cleanup job scheduled every {interval_minutes} minutes")

    def run_once(self) -> list[dict]:
        """Ejecutar una pasada completa (sin scheduler)."""
        self.logger.info("Running one-time pipeline pass...")
        self.cleanup_stale_runs()
        results = self.scrape_due_categories()
        self.send_digests()
        return results

    def start(self):
        """Iniciar scheduler."""
        self.add_scraping_job()
        self.add_digest_job()
        self.add_cleanup_job()

        # Ejecutar inmediatamente al inicio
        self.logger.info("Running initial pass...")
        self.run_once()

        self.logger.info("Scheduler started. Press Ctrl+C to exit.")

        try:
            self.scheduler.start()
        except (KeyboardInterrupt, SystemExit):
            self.logger.info("Scheduler stopped by user")
            self.scheduler.shutdown(wait=False)

    def list_jobs(self) -> list[dict]:
        """Listar jobs programados."""
        jobs = [
            {"id": job.id, "name": job.name, "trigger": str(job.trigger)}
            for job in self.scheduler.get_jobs()
        ]
        if not jobs:
            self.logger.info("No scheduled jobs")
        for job in jobs:
            self.logger.info(f"  - {job['name']} (ID: {job['id']}, {job['trigger']})")
        return jobs
