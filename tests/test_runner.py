from datetime import timedelta

import pytest

from pricewatch.database.repository import CategoryRepository, ScrapeRunRepository
from pricewatch.models.product import ScrapeStatus
from pricewatch.scheduler.maintenance import cleanup_stale_runs
from pricewatch.scrapers.anti_bot.headers import PolitenessDelay
from pricewatch.scrapers.fetcher import FetchError
from pricewatch.scrapers.runner import CategoryNotFoundError, CategoryScraper, ScrapeAbortedError

from conftest import (
    FakeFetcher, category_page, category_url, fast_scraper_config, product_card,
)

SLUG = "lauamangud"


def _scraper(db, clock, pages, **config_overrides):
    fetcher = FakeFetcher(pages, config=fast_scraper_config(**config_overrides))
    slept = []
    scraper = CategoryScraper(
        db, fetcher, delay=PolitenessDelay(0, 0, sleep=slept.append), clock=clock,
    )
    return scraper, fetcher, slept


def _runs(db):
    with db.get_connection() as conn:
        return ScrapeRunRepository(conn).list_recent()


def test_scrape_walks_pagination_sequentially(seeded_db, clock):
    pages = {
        category_url(SLUG): category_page(
            [product_card("catan", "Catan"), product_card("azul", "Azul")],
            next_url=category_url(SLUG, 2),
        ),
        category_url(SLUG, 2): category_page([product_card("dixit", "Dixit", in_stock=False)]),
    }
    scraper, fetcher, slept = _scraper(seeded_db, clock, pages)

    result = scraper.scrape_category(SLUG)

    assert fetcher.requested == [category_url(SLUG), category_url(SLUG, 2)]
    assert len(slept) == 1
    assert result.status == ScrapeStatus.COMPLETED
    assert result.total_products == 3
    assert result.new_products == 3
    assert result.pages_scraped == 2

    run = _runs(seeded_db)[0]
    assert run.id == result.scrape_run_id
    assert run.status == ScrapeStatus.COMPLETED
    assert run.total_products == 3
    assert run.completed_at is not None
    assert run.duration_ms == result.duration_ms


def test_scrape_accepts_numeric_category_id(seeded_db, clock, category):
    pages = {category_url(SLUG): category_page([product_card("catan", "Catan")])}
    scraper, _, _ = _scraper(seeded_db, clock, pages)

    result = scraper.scrape_category(str(category.id))

    assert result.total_products == 1


def test_completed_run_schedules_next_scrape(seeded_db, clock):
    pages = {category_url(SLUG): category_page([product_card("catan", "Catan")])}
    scraper, _, _ = _scraper(seeded_db, clock, pages)

    scraper.scrape_category(SLUG)

    with seeded_db.get_connection() as conn:
        category = CategoryRepository(conn).get_by_slug(SLUG)
    run = _runs(seeded_db)[0]
    assert category.next_run_at == run.completed_at + timedelta(hours=category.scrape_interval_hours)


def test_pagination_loop_stops_at_visited_page(seeded_db, clock):
    pages = {
        category_url(SLUG): category_page([product_card("catan", "Catan")], next_url=category_url(SLUG, 2)),
        category_url(SLUG, 2): category_page([product_card("azul", "Azul")], next_url=category_url(SLUG)),
    }
    scraper, fetcher, _ = _scraper(seeded_db, clock, pages)

    result = scraper.scrape_category(SLUG)

    assert len(fetcher.requested) == 2
    assert result.pages_scraped == 2
    assert result.total_products == 2


def test_page_safety_limit_fails_the_run(seeded_db, clock):
    pages = {
        category_url(SLUG, n): category_page(
            [product_card(f"game-{n}", f"Game {n}")], next_url=category_url(SLUG, n + 1)
        )
        for n in range(1, 5)
    }
    scraper, fetcher, _ = _scraper(seeded_db, clock, pages, max_pages=2)

    with pytest.raises(ScrapeAbortedError, match="safety limit"):
        scraper.scrape_category(SLUG)

    assert len(fetcher.requested) == 2
    run = _runs(seeded_db)[0]
    assert run.status == ScrapeStatus.FAILED
    assert "Scraper safety limit reached" in run.error_message


def test_zero_products_on_first_page_aborts(seeded_db, clock):
    pages = {category_url(SLUG): category_page([])}
    scraper, _, _ = _scraper(seeded_db, clock, pages)

    with pytest.raises(ScrapeAbortedError, match="zero valid products"):
        scraper.scrape_category(SLUG)

    assert _runs(seeded_db)[0].status == ScrapeStatus.FAILED


def test_too_many_parser_warnings_abort(seeded_db, clock):
    cards = [product_card("catan", "Catan")] + [
        product_card(f"broken-{n}", f"Broken {n}", image=False) for n in range(3)
    ]
    pages = {category_url(SLUG): category_page(cards)}
    scraper, _, _ = _scraper(seeded_db, clock, pages, parser_warning_limit=2)

    with pytest.raises(ScrapeAbortedError, match="Too many parser warnings"):
        scraper.scrape_category(SLUG)

    run = _runs(seeded_db)[0]
    assert run.status == ScrapeStatus.FAILED
    assert run.total_products == 0


def test_warnings_within_limit_are_tolerated(seeded_db, clock):
    cards = [product_card("catan", "Catan"), product_card("broken", "Broken", image=False)]
    pages = {category_url(SLUG): category_page(cards)}
    scraper, _, _ = _scraper(seeded_db, clock, pages)

    result = scraper.scrape_category(SLUG)

    assert result.total_products == 1
    assert result.parser_warnings == ["Product card 2: Missing required product fields"]


def test_fetch_failure_marks_run_failed(seeded_db, clock):
    scraper, _, _ = _scraper(seeded_db, clock, {})

    with pytest.raises(FetchError):
        scraper.scrape_category(SLUG)

    run = _runs(seeded_db)[0]
    assert run.status == ScrapeStatus.FAILED
    assert "404" in run.error_message
    assert run.completed_at is not None


def test_unknown_category_raises_before_creating_a_run(seeded_db, clock):
    scraper, _, _ = _scraper(seeded_db, clock, {})

    with pytest.raises(CategoryNotFoundError):
        scraper.scrape_category("does-not-exist")

    assert _runs(seeded_db) == []


class SweepingFetcher(FakeFetcher):
    """Ejecuta la limpieza de corridas colgadas mientras la corrida sigue abierta."""

    def __init__(self, db, pages, sweep_at):
        super().__init__(pages)
        self.db = db
        self.sweep_at = sweep_at

    def fetch_page(self, url):
        cleanup_stale_runs(self.db, 30, now=self.sweep_at)
        return super().fetch_page(url)


def test_run_swept_as_stale_is_not_overwritten_on_completion(seeded_db, clock):
    pages = {category_url(SLUG): category_page([product_card("catan", "Catan")])}
    fetcher = SweepingFetcher(seeded_db, pages, sweep_at=clock.now + timedelta(hours=2))
    scraper = CategoryScraper(seeded_db, fetcher, delay=PolitenessDelay(0, 0, sleep=lambda s: None), clock=clock)

    with pytest.raises(ScrapeAbortedError, match="no longer running"):
        scraper.scrape_category(SLUG)

    run = _runs(seeded_db)[0]
    assert run.status == ScrapeStatus.FAILED
    assert run.error_message == "Marked stale by cleanup after 30 minutes"
    with seeded_db.get_connection() as conn:
        assert CategoryRepository(conn).get_by_slug(SLUG).next_run_at is None
