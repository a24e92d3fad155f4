"""Models del motor de diferencias (diff)."""
from enum import Enum
from pydantic import BaseModel
from typing import Optional
from datetime import datetime
from decimal import Decimal

from pricewatch.models.product import ScrapeRun


class ChangeType(str, Enum):
    NEW_PRODUCT = "new_product"
    PRICE_INCREASE = "price_increase"
    PRICE_DECREASE = "price_decrease"
    SOLD_OUT = "sold_out"
    BACK_IN_STOCK = "back_in_stock"


class SnapshotState(BaseModel):
    """Campos rastreados de un snapshot usados para comparar."""

    product_id: int
    price: Decimal
    original_price: Optional[Decimal] = None
    in_stock: bool
    scraped_at: datetime


class CurrentRunProduct(BaseModel):
    """Snapshot de la corrida actual junto con su producto."""

    product_id: int
    external_url: str
    name: str
    first_seen_at: datetime
    snapshot: SnapshotState


class DiffContext(BaseModel):
    scrape_run: ScrapeRun
    current_products: list[CurrentRunProduct] = []
    previous_run_exists: bool = False
    historical_snapshots: dict[int, SnapshotState] = {}

    @property
    def started_at(self) -> datetime:
        return self.scrape_run.started_at

    @property
    def completed_at(self) -> datetime:
        return self.scrape_run.completed_at


class PendingChangeItem(BaseModel):
    product_id: int
    change_type: ChangeType
    old_price: Optional[Decimal] = None
    new_price: Optional[Decimal] = None
    old_stock_status: Optional[bool] = None
    new_stock_status: Optional[bool] = None


class DiffDetectionResult(BaseModel):
    change_items: list[PendingChangeItem] = []
    sold_out_count: int = 0
    back_in_stock_count: int = 0

    @property
    def has_changes(self) -> bool:
        return len(self.change_items) > 0


class DeliveryRecipient(BaseModel):
    user_id: int
    role: str
    notification_channel_id: int


class DiffRunResult(BaseModel):
    """Resultado de ejecutar el diff sobre una corrida."""

    scrape_run_id: int
    change_report_id: Optional[int] = None
    total_changes: int = 0
    sold_out_count: int = 0
    back_in_stock_count: int = 0
    delivery_count: int = 0
    reused_existing_report: bool = False
