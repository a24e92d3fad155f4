"""Construir el contexto del diff: snapshots actuales + línea base histórica."""
import sqlite3

from pricewatch.database.repository import ProductRepository, ScrapeRunRepository
from pricewatch.models.change import DiffContext
from pricewatch.models.product import ScrapeStatus


class DiffEngineError(RuntimeError):
    """La corrida no existe o todavía no está completa."""


def build_diff_context(conn: sqlite3.Connection, scrape_run_id: int) -> DiffContext:
    runs = ScrapeRunRepository(conn)
    products = ProductRepository(conn)

    scrape_run = runs.get(scrape_run_id)
    if scrape_run is None:
        raise DiffEngineError(f"Scrape run not found: {scrape_run_id}")
    if scrape_run.status != ScrapeStatus.COMPLETED or scrape_run.completed_at is None:
        raise DiffEngineError(f"Diff engine requires a completed scrape run: {scrape_run_id}")

    current = products.snapshots_for_run(scrape_run_id)

    # Sin una corrida completa anterior en la categoría no hay línea base
    previous_run_exists = runs.has_earlier_completed(scrape_run.category_id, scrape_run.started_at)
    historical = {}
    if previous_run_exists and current:
        historical = products.latest_snapshots_before(
            (item.product_id for item in current),
            before=scrape_run.started_at,
        )

    return DiffContext(
        scrape_run=scrape_run,
        current_products=current,
        previous_run_exists=previous_run_exists,
        historical_snapshots=historical,
    )
