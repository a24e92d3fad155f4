"""Motor de diferencias: una vez por corrida, luego despacho inmediato."""
import sqlite3
from typing import Callable, Optional

from pricewatch.database.connection import Database
from pricewatch.database.reports import ChangeReportRepository
from pricewatch.diff.baseline import build_diff_context
from pricewatch.diff.detect import detect_changes
from pricewatch.diff.persist import persist_diff_results
from pricewatch.models.change import DiffRunResult
from pricewatch.utils.logger import get_logger

logger = get_logger(__name__)


def _cached_result(scrape_run_id: int, existing: dict) -> DiffRunResult:
    return DiffRunResult(
        scrape_run_id=scrape_run_id,
        change_report_id=existing['id'],
        total_changes=existing['total_changes'],
        sold_out_count=existing['sold_out_count'],
        back_in_stock_count=existing['back_in_stock_count'],
        delivery_count=existing['delivery_count'],
        reused_existing_report=True,
    )


class DiffEngine:
    """Compara la corrida con la línea base y crea reporte + entregas."""

    def __init__(self, db: Database, send_immediate: Optional[Callable[[int], object]] = None):
        self.db = db
        self.send_immediate = send_immediate

    def run(self, scrape_run_id: int) -> DiffRunResult:
        with self.db.get_connection() as conn:
            existing = ChangeReportRepository(conn).get_by_run(scrape_run_id)
            if existing:
                logger.info(f"Run {scrape_run_id} already has change report {existing['id']}; reusing it")
                return _cached_result(scrape_run_id, existing)

            context = build_diff_context(conn, scrape_run_id)

        detection = detect_changes(context)

        try:
            result = self.db.run_in_transaction(
                lambda conn: persist_diff_results(
                    conn,
                    scrape_run_id=scrape_run_id,
                    category_id=context.scrape_run.category_id,
                    detection=detection,
                )
            )
        except sqlite3.IntegrityError:
            # Otro proceso creó el reporte de esta corrida primero
            with self.db.get_connection() as conn:
                existing = ChangeReportRepository(conn).get_by_run(scrape_run_id)
            if not existing:
                raise
            logger.info(f"Change report for run {scrape_run_id} was created concurrently; reusing it")
            return _cached_result(scrape_run_id, existing)

        if result.change_report_id is None:
            logger.info(f"Run {scrape_run_id}: no changes detected, no report created")
            return result

        logger.info(
            f"Run {scrape_run_id}: report {result.change_report_id} with {result.total_changes} changes "
            f"({result.sold_out_count} sold out, {result.back_in_stock_count} back in stock), "
            f"{result.delivery_count} deliveries"
        )
        if self.send_immediate is not None:
            self.send_immediate(result.change_report_id)
        return result


def run_diff_engine(
    db: Database,
    scrape_run_id: int,
    send_immediate: Optional[Callable[[int], object]] = None,
) -> DiffRunResult:
    return DiffEngine(db, send_immediate).run(scrape_run_id)
