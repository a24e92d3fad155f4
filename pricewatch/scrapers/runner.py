"""Corrida de scraping de una categoría: fetch -> parse -> persist."""
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set

from pricewatch.config.settings import ScraperConfig
from pricewatch.database.connection import Database, utc_now
from pricewatch.database.repository import CategoryRepository, ScrapeRunRepository
from pricewatch.models.product import ParsedProduct, ScrapeCategoryResult, ScrapeStatus
from pricewatch.scrapers.anti_bot.headers import PolitenessDelay
from pricewatch.scrapers.fetcher import PageFetcher, build_category_url
from pricewatch.scrapers.parser import parse_category_page, parse_price
from pricewatch.scrapers.persist import persist_scrape_results
from pricewatch.utils.logger import get_logger


class CategoryNotFoundError(LookupError):
    """No existe una categoría con ese id o slug."""


class ScrapeAbortedError(RuntimeError):
    """Cambio estructural en la página o límite de seguridad alcanzado."""


def _elapsed_ms(started_at: datetime, finished_at: datetime) -> int:
    return max(0, int((finished_at - started_at).total_seconds() * 1000))


class CategoryScraper:
    """Scrapea el listado completo de una categoría, página por página."""

    def __init__(
        self,
        db: Database,
        fetcher: PageFetcher,
        config: Optional[ScraperConfig] = None,
        delay: Optional[PolitenessDelay] = None,
        clock: Callable[[], datetime] = utc_now,
        price_parser: Callable = parse_price,
    ):
        self.logger = get_logger(self.__class__.__name__)
        self.db = db
        self.fetcher = fetcher
        self.config = config or fetcher.config
        self.delay = delay or PolitenessDelay(
            self.config.min_delay_seconds, self.config.max_delay_seconds
        )
        self.clock = clock
        self.price_parser = price_parser

    def _start_run(self, id_or_slug: str):
        with self.db.transaction() as conn:
            category = CategoryRepository(conn).resolve(id_or_slug)
            if category is None:
                raise CategoryNotFoundError(f"Category not found: {id_or_slug}")
            run = ScrapeRunRepository(conn).create(category.id, started_at=self.clock())
        return category, run

    def _collect_pages(self, start_url: str) -> tuple[Dict[str, ParsedProduct], List[str], int]:
        """Recorrer la paginación de forma secuencial con pausa entre páginas."""
        products_by_url: Dict[str, ParsedProduct] = {}
        parser_warnings: List[str] = []
        visited: Set[str] = set()
        next_url: Optional[str] = start_url
        pages_scraped = 0

        while next_url:
            if next_url in visited:
                self.logger.info(f"Pagination loops back to {next_url}; stopping")
                break
            if pages_scraped >= self.config.max_pages:
                raise ScrapeAbortedError(
                    f"Scraper safety limit reached ({self.config.max_pages} pages)"
                )

            visited.add(next_url)
            html = self.fetcher.fetch_page(next_url)
            page = parse_category_page(html, self.config.base_url, self.price_parser)
            parser_warnings.extend(page.parser_warnings)

            if not page.products and pages_scraped == 0:
                raise ScrapeAbortedError("Parser produced zero valid products on the first page")
            if len(page.parser_warnings) > self.config.parser_warning_limit:
                raise ScrapeAbortedError(
                    f"Too many parser warnings on a single page "
                    f"({len(page.parser_warnings)} > {self.config.parser_warning_limit})"
                )

            for warning in page.parser_warnings:
                self.logger.warning(f"{next_url}: {warning}")
            for product in page.products:
                products_by_url[product.external_url] = product

            pages_scraped += 1
            self.logger.info(
                f"Page {pages_scraped}: {len(page.products)} products, "
                f"{len(page.parser_warnings)} warnings"
            )
            next_url = page.next_page_url
            if next_url:
                self.delay.wait()

        return products_by_url, parser_warnings, pages_scraped

    def scrape_category(self, id_or_slug: str) -> ScrapeCategoryResult:
        """Ejecutar una corrida completa; la corrida queda COMPLETED o FAILED."""
        category, run = self._start_run(id_or_slug)
        self.logger.info(f"Starting scrape run {run.id} for category {category.slug}")

        try:
            products, warnings, pages = self._collect_pages(
                build_category_url(self.config.base_url, category.slug)
            )
            stats = persist_scrape_results(
                self.db,
                scrape_run_id=run.id,
                category_id=category.id,
                products=products.values(),
                pages_scraped=pages,
                parser_warnings=warnings,
                max_wait=self.config.persist_max_wait,
                timeout=self.config.persist_timeout,
                clock=self.clock,
            )

            completed_at = self.clock()
            duration_ms = _elapsed_ms(run.started_at, completed_at)
            with self.db.transaction() as conn:
                completed = ScrapeRunRepository(conn).mark_completed(
                    run.id,
                    total_products=stats.total_products,
                    new_products=stats.new_products,
                    price_changes=stats.price_changes,
                    pages_scraped=stats.pages_scraped,
                    duration_ms=duration_ms,
                    completed_at=completed_at,
                )
                if not completed:
                    # La limpieza de corridas colgadas ya la marcó FAILED
                    raise ScrapeAbortedError(
                        f"Scrape run {run.id} is no longer running and was not completed"
                    )
                CategoryRepository(conn).schedule_next_run(category.id, completed_at)

        except Exception as e:
            # Lo ya persistido se conserva; las corridas siguientes convergen
            failed_at = self.clock()
            with self.db.transaction() as conn:
                ScrapeRunRepository(conn).mark_failed(
                    run.id,
                    str(e) or e.__class__.__name__,
                    completed_at=failed_at,
                    duration_ms=_elapsed_ms(run.started_at, failed_at),
                )
            self.logger.error(f"Scrape run {run.id} for {category.slug} failed: {e}")
            raise

        self.logger.info(
            f"Scrape run {run.id} completed: {stats.total_products} products "
            f"over {stats.pages_scraped} pages in {duration_ms} ms"
        )
        return ScrapeCategoryResult(
            scrape_run_id=run.id,
            status=ScrapeStatus.COMPLETED,
            duration_ms=duration_ms,
            **stats.model_dump(),
        )
