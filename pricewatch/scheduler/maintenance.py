"""Limpieza de corridas RUNNING que quedaron colgadas."""
from datetime import datetime, timedelta
from typing import List, Optional, Union

from pydantic import BaseModel

from pricewatch.database.connection import Database, utc_now
from pricewatch.database.repository import ScrapeRunRepository
from pricewatch.utils.logger import get_logger

logger = get_logger(__name__)

DEFAULT_STALE_MINUTES = 30


class StaleRunSweepResult(BaseModel):
    updated_count: int
    stale_minutes: int
    completed_at: Optional[datetime] = None
    run_ids: List[int] = []
    message: Optional[str] = None


def parse_stale_minutes(value: Union[str, int, None]) -> int:
    if value is None or value == "":
        return DEFAULT_STALE_MINUTES
    try:
        minutes = int(value)
    except (TypeError, ValueError):
        raise ValueError("Expected stale-minutes to be a positive integer") from None
    if minutes <= 0:
        raise ValueError("Expected stale-minutes to be a positive integer")
    return minutes


def cleanup_stale_runs(
    db: Database,
    stale_minutes: Union[str, int, None] = DEFAULT_STALE_MINUTES,
    now: Optional[datetime] = None,
) -> StaleRunSweepResult:
    """Marcar como FAILED las corridas RUNNING iniciadas antes de `now - stale_minutes`."""
    minutes = parse_stale_minutes(stale_minutes)
    now = now or utc_now()
    threshold = now - timedelta(minutes=minutes)

    with db.transaction() as conn:
        repo = ScrapeRunRepository(conn)
        stale_runs = repo.find_stale_running(threshold)
        for run in stale_runs:
            repo.mark_failed(
                run.id,
                f"Marked stale by cleanup after {minutes} minutes",
                completed_at=now,
            )

    if not stale_runs:
        logger.debug(f"No scrape runs older than {minutes} minutes are still running")
        return StaleRunSweepResult(
            updated_count=0,
            stale_minutes=minutes,
            message="No stale scrape runs found",
        )

    run_ids = [run.id for run in stale_runs]
    logger.warning(f"Marked {len(run_ids)} stale scrape runs as failed: {run_ids}")
    return StaleRunSweepResult(
        updated_count=len(run_ids),
        stale_minutes=minutes,
        completed_at=now,
        run_ids=run_ids,
    )
