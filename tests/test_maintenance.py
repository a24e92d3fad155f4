from datetime import timedelta

import pytest

from pricewatch.database.repository import ScrapeRunRepository
from pricewatch.models.product import ScrapeStatus
from pricewatch.scheduler.maintenance import cleanup_stale_runs, parse_stale_minutes

from conftest import T0


def _create_run(db, category, started_at, status=ScrapeStatus.RUNNING):
    with db.transaction() as conn:
        return ScrapeRunRepository(conn).create(category.id, started_at=started_at, status=status)


def _get(db, run_id):
    with db.get_connection() as conn:
        return ScrapeRunRepository(conn).get(run_id)


def test_stale_running_runs_are_marked_failed(seeded_db, category):
    now = T0 + timedelta(hours=2)
    stale = _create_run(seeded_db, category, now - timedelta(minutes=45))
    fresh = _create_run(seeded_db, category, now - timedelta(minutes=10))
    finished = _create_run(seeded_db, category, now - timedelta(hours=1), status=ScrapeStatus.COMPLETED)

    result = cleanup_stale_runs(seeded_db, 30, now=now)

    assert result.updated_count == 1
    assert result.run_ids == [stale.id]
    assert result.completed_at == now
    swept = _get(seeded_db, stale.id)
    assert swept.status == ScrapeStatus.FAILED
    assert swept.error_message == "Marked stale by cleanup after 30 minutes"
    assert swept.completed_at == now
    assert _get(seeded_db, fresh.id).status == ScrapeStatus.RUNNING
    assert _get(seeded_db, finished.id).status == ScrapeStatus.COMPLETED


def test_nothing_to_sweep(seeded_db):
    result = cleanup_stale_runs(seeded_db, now=T0)

    assert result.updated_count == 0
    assert result.stale_minutes == 30
    assert result.message == "No stale scrape runs found"


@pytest.mark.parametrize("value, expected", [(None, 30), ("", 30), ("45", 45), (5, 5)])
def test_parse_stale_minutes(value, expected):
    assert parse_stale_minutes(value) == expected


@pytest.mark.parametrize("value", ["0", "-5", "abc", "1.5"])
def test_parse_stale_minutes_rejects_invalid(value):
    with pytest.raises(ValueError, match="positive integer"):
        parse_stale_minutes(value)
