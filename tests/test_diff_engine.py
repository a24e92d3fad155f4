from datetime import timedelta
from decimal import Decimal

import pytest

from pricewatch.database.reports import ChangeReportRepository, DeliveryRepository, UserRepository
from pricewatch.database.repository import ScrapeRunRepository
from pricewatch.diff.baseline import DiffEngineError
from pricewatch.diff.detect import compare_prices, detect_changes, is_new_product_for_run
from pricewatch.diff.engine import DiffEngine, run_diff_engine
from pricewatch.models.change import (
    ChangeType, CurrentRunProduct, DiffContext, SnapshotState,
)
from pricewatch.models.notification import DeliveryStatus, UserRole
from pricewatch.models.product import ScrapeRun, ScrapeStatus

from conftest import T0, make_user, product_card, run_scrape

SLUG = "lauamangud"


def _items(db, report_id):
    with db.get_connection() as conn:
        return {
            (item.product.name, item.change_type): item
            for item in ChangeReportRepository(conn).list_items(report_id)
        }


def _report_count(db, run_id):
    with db.get_connection() as conn:
        return ChangeReportRepository(conn).count_reports(run_id)


def test_first_run_reports_every_product_as_new(seeded_db, clock):
    scrape = run_scrape(seeded_db, clock, SLUG, [product_card("catan", "Catan"), product_card("azul", "Azul")])

    result = run_diff_engine(seeded_db, scrape.scrape_run_id)

    assert result.total_changes == 2
    assert set(_items(seeded_db, result.change_report_id)) == {
        ("Catan", ChangeType.NEW_PRODUCT),
        ("Azul", ChangeType.NEW_PRODUCT),
    }


def test_price_and_stock_transitions(seeded_db, clock):
    run_scrape(seeded_db, clock, SLUG, [
        product_card("catan", "Catan", price="12,99 €"),
        product_card("azul", "Azul", price="39,99 €"),
        product_card("dixit", "Dixit", price="24,99 €"),
        product_card("carcassonne", "Carcassonne", in_stock=False),
    ])
    second = run_scrape(seeded_db, clock, SLUG, [
        product_card("catan", "Catan", price="14,99 €"),
        product_card("azul", "Azul", price="29,99 €"),
        product_card("dixit", "Dixit", price="24,99 €", in_stock=False),
        product_card("carcassonne", "Carcassonne", in_stock=True),
    ])

    result = run_diff_engine(seeded_db, second.scrape_run_id)
    items = _items(seeded_db, result.change_report_id)

    assert set(items) == {
        ("Catan", ChangeType.PRICE_INCREASE),
        ("Azul", ChangeType.PRICE_DECREASE),
        ("Dixit", ChangeType.SOLD_OUT),
        ("Carcassonne", ChangeType.BACK_IN_STOCK),
    }
    increase = items[("Catan", ChangeType.PRICE_INCREASE)]
    assert (increase.old_price, increase.new_price) == (Decimal("12.99"), Decimal("14.99"))
    decrease = items[("Azul", ChangeType.PRICE_DECREASE)]
    assert (decrease.old_price, decrease.new_price) == (Decimal("39.99"), Decimal("29.99"))
    sold_out = items[("Dixit", ChangeType.SOLD_OUT)]
    assert (sold_out.old_stock_status, sold_out.new_stock_status) == (True, False)

    assert result.sold_out_count == 1
    assert result.back_in_stock_count == 1
    with seeded_db.get_connection() as conn:
        run = ScrapeRunRepository(conn).get(second.scrape_run_id)
    assert (run.sold_out, run.back_in_stock) == (1, 1)


def test_unchanged_run_creates_no_report(seeded_db, clock):
    cards = [product_card("catan", "Catan")]
    run_scrape(seeded_db, clock, SLUG, cards)
    second = run_scrape(seeded_db, clock, SLUG, cards)

    result = run_diff_engine(seeded_db, second.scrape_run_id)

    assert result.change_report_id is None
    assert result.total_changes == 0
    assert _report_count(seeded_db, second.scrape_run_id) == 0


def test_running_diff_twice_reuses_the_report(seeded_db, clock):
    scrape = run_scrape(seeded_db, clock, SLUG, [product_card("catan", "Catan")])
    calls = []
    engine = DiffEngine(seeded_db, send_immediate=calls.append)

    first = engine.run(scrape.scrape_run_id)
    second = engine.run(scrape.scrape_run_id)

    assert first.reused_existing_report is False
    assert second.reused_existing_report is True
    assert second.change_report_id == first.change_report_id
    assert (second.total_changes, second.sold_out_count, second.back_in_stock_count) == (
        first.total_changes, first.sold_out_count, first.back_in_stock_count,
    )
    assert _report_count(seeded_db, scrape.scrape_run_id) == 1
    assert calls == [first.change_report_id]


def test_product_first_seen_in_other_category_is_not_new(seeded_db, clock):
    run_scrape(seeded_db, clock, SLUG, [product_card("catan", "Catan", price="12,99 €")])
    other = run_scrape(seeded_db, clock, "kaardimangud", [
        product_card("catan", "Catan", price="14,99 €"),
        product_card("dominion", "Dominion"),
    ])

    result = run_diff_engine(seeded_db, other.scrape_run_id)

    # Primera corrida de la categoría: sin línea base no hay eventos de precio
    assert set(_items(seeded_db, result.change_report_id)) == {("Dominion", ChangeType.NEW_PRODUCT)}


def test_diff_requires_completed_run(seeded_db, clock, category):
    with seeded_db.transaction() as conn:
        run = ScrapeRunRepository(conn).create(category.id, started_at=clock())

    with pytest.raises(DiffEngineError, match="completed"):
        run_diff_engine(seeded_db, run.id)
    with pytest.raises(DiffEngineError, match="not found"):
        run_diff_engine(seeded_db, 9999)


def test_report_creates_pending_delivery_per_subscriber(seeded_db, clock, category):
    paid, _ = make_user(seeded_db, "paid@example.com", category.id, role=UserRole.PAID)
    free, _ = make_user(seeded_db, "free@example.com", category.id)
    make_user(seeded_db, "other@example.com")

    scrape = run_scrape(seeded_db, clock, SLUG, [product_card("catan", "Catan")])
    result = run_diff_engine(seeded_db, scrape.scrape_run_id)

    assert result.delivery_count == 2
    with seeded_db.get_connection() as conn:
        deliveries = DeliveryRepository(conn).list_for_report(result.change_report_id)
    assert {d.user_id for d in deliveries} == {paid.id, free.id}
    assert all(d.status == DeliveryStatus.PENDING for d in deliveries)


def test_inactive_subscription_gets_no_delivery(seeded_db, clock, category):
    user, _ = make_user(seeded_db, "paused@example.com", category.id)
    with seeded_db.transaction() as conn:
        UserRepository(conn).subscribe(user.id, category.id, is_active=False)

    scrape = run_scrape(seeded_db, clock, SLUG, [product_card("catan", "Catan")])
    assert run_diff_engine(seeded_db, scrape.scrape_run_id).delivery_count == 0


def _context(previous_run_exists, current, historical, first_seen=T0 - timedelta(days=1)):
    run = ScrapeRun(
        id=1, category_id=1, status=ScrapeStatus.COMPLETED,
        started_at=T0, completed_at=T0 + timedelta(minutes=5),
    )
    return DiffContext(
        scrape_run=run,
        previous_run_exists=previous_run_exists,
        current_products=[
            CurrentRunProduct(
                product_id=1, external_url="https://mabrik.ee/toode/catan", name="Catan",
                first_seen_at=first_seen, snapshot=current,
            )
        ],
        historical_snapshots={1: historical} if historical else {},
    )


def _state(price, in_stock=True):
    return SnapshotState(product_id=1, price=Decimal(price), in_stock=in_stock, scraped_at=T0)


def test_equal_prices_yield_no_price_event():
    detection = detect_changes(_context(True, _state("12.99"), _state("12.99")))
    assert detection.change_items == []


def test_history_is_ignored_without_previous_run():
    detection = detect_changes(_context(False, _state("14.99"), _state("12.99")))
    assert detection.change_items == []


def test_new_product_window_is_inclusive():
    start, end = T0, T0 + timedelta(minutes=5)
    assert is_new_product_for_run(start, start, end)
    assert is_new_product_for_run(end, start, end)
    assert not is_new_product_for_run(start - timedelta(microseconds=1), start, end)
    assert not is_new_product_for_run(end + timedelta(microseconds=1), start, end)


def test_compare_prices():
    assert compare_prices(Decimal("14.99"), Decimal("12.99")) == 1
    assert compare_prices(Decimal("12.99"), Decimal("14.99")) == -1
    assert compare_prices(Decimal("12.99"), Decimal("12.990")) == 0
    assert compare_prices(None, Decimal("1.00")) is None


def test_report_created_concurrently_is_reused(seeded_db, clock, monkeypatch):
    scrape = run_scrape(seeded_db, clock, SLUG, [product_card("catan", "Catan")])
    calls = []
    created = {}

    def detect_then_race(context):
        # Otro proceso termina primero y crea el reporte de la misma corrida
        with seeded_db.transaction() as conn:
            created["id"] = ChangeReportRepository(conn).create(scrape.scrape_run_id, 1, created_at=T0)
        return detect_changes(context)

    monkeypatch.setattr("pricewatch.diff.engine.detect_changes", detect_then_race)

    result = DiffEngine(seeded_db, send_immediate=calls.append).run(scrape.scrape_run_id)

    assert result.reused_existing_report is True
    assert result.change_report_id == created["id"]
    assert _report_count(seeded_db, scrape.scrape_run_id) == 1
    assert calls == []
