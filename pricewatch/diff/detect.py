"""Reglas de detección de cambios. Función pura sobre un DiffContext."""
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from pricewatch.models.change import (
    ChangeType, DiffContext, DiffDetectionResult, PendingChangeItem,
)


def is_new_product_for_run(first_seen_at: datetime, started_at: datetime, completed_at: datetime) -> bool:
    return started_at <= first_seen_at <= completed_at


def compare_prices(current: Optional[Decimal], previous: Optional[Decimal]) -> Optional[int]:
    """1 si subió, -1 si bajó, 0 si igual; None si falta alguno."""
    if current is None or previous is None:
        return None
    if current == previous:
        return 0
    return 1 if current > previous else -1


def dedupe_change_items(items: List[PendingChangeItem]) -> List[PendingChangeItem]:
    unique: Dict[Tuple[int, ChangeType], PendingChangeItem] = {}
    for item in items:
        unique[(item.product_id, item.change_type)] = item
    return list(unique.values())


def detect_changes(context: DiffContext) -> DiffDetectionResult:
    pending: List[PendingChangeItem] = []

    for current in context.current_products:
        snapshot = current.snapshot
        previous = (
            context.historical_snapshots.get(current.product_id)
            if context.previous_run_exists else None
        )

        if is_new_product_for_run(current.first_seen_at, context.started_at, context.completed_at):
            pending.append(PendingChangeItem(
                product_id=current.product_id,
                change_type=ChangeType.NEW_PRODUCT,
                new_price=snapshot.price,
                new_stock_status=snapshot.in_stock,
            ))

        if previous is None:
            continue

        comparison = compare_prices(snapshot.price, previous.price)
        if comparison == 1:
            pending.append(PendingChangeItem(
                product_id=current.product_id,
                change_type=ChangeType.PRICE_INCREASE,
                old_price=previous.price,
                new_price=snapshot.price,
            ))
        elif comparison == -1:
            pending.append(PendingChangeItem(
                product_id=current.product_id,
                change_type=ChangeType.PRICE_DECREASE,
                old_price=previous.price,
                new_price=snapshot.price,
            ))

        if previous.in_stock and not snapshot.in_stock:
            pending.append(PendingChangeItem(
                product_id=current.product_id,
                change_type=ChangeType.SOLD_OUT,
                old_stock_status=True,
                new_stock_status=False,
            ))
        elif not previous.in_stock and snapshot.in_stock:
            pending.append(PendingChangeItem(
                product_id=current.product_id,
                change_type=ChangeType.BACK_IN_STOCK,
                old_stock_status=False,
                new_stock_status=True,
            ))

    change_items = dedupe_change_items(pending)
    return DiffDetectionResult(
        change_items=change_items,
        sold_out_count=sum(1 for item in change_items if item.change_type == ChangeType.SOLD_OUT),
        back_in_stock_count=sum(
            1 for item in change_items if item.change_type == ChangeType.BACK_IN_STOCK
        ),
    )
