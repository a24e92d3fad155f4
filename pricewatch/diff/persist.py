"""Guardar el reporte de cambios, sus ítems y las entregas pendientes."""
import sqlite3
from typing import Optional

from pricewatch.database.connection import utc_now
from pricewatch.database.reports import ChangeReportRepository, DeliveryRepository, UserRepository
from pricewatch.database.repository import ScrapeRunRepository
from pricewatch.models.change import DiffDetectionResult, DiffRunResult


def persist_diff_results(
    conn: sqlite3.Connection,
    *,
    scrape_run_id: int,
    category_id: int,
    detection: DiffDetectionResult,
) -> DiffRunResult:
    """
    Debe ejecutarse dentro de una transacción. Sin cambios no se crea reporte;
    con cambios se crea el reporte, sus ítems y una entrega PENDING por destinatario.
    """
    ScrapeRunRepository(conn).update_stock_counters(
        scrape_run_id, detection.sold_out_count, detection.back_in_stock_count
    )

    change_report_id: Optional[int] = None
    delivery_count = 0
    if detection.has_changes:
        reports = ChangeReportRepository(conn)
        change_report_id = reports.create(
            scrape_run_id, len(detection.change_items), created_at=utc_now()
        )
        reports.add_items(change_report_id, detection.change_items)

        recipients = UserRepository(conn).recipients_for_category(category_id)
        if recipients:
            delivery_count = DeliveryRepository(conn).create_pending(change_report_id, recipients)

    return DiffRunResult(
        scrape_run_id=scrape_run_id,
        change_report_id=change_report_id,
        total_changes=len(detection.change_items),
        sold_out_count=detection.sold_out_count,
        back_in_stock_count=detection.back_in_stock_count,
        delivery_count=delivery_count,
    )
