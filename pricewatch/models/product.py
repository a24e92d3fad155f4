"""Models para categorías, productos, snapshots y corridas de scraping."""
from enum import Enum
from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime
from decimal import Decimal


class ScrapeStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class Category(BaseModel):
    """Categoría de la tienda; la jerarquía se deriva del slug."""

    id: int
    slug: str
    name_et: str
    name_en: str
    parent_id: Optional[int] = None
    is_active: bool = True
    scrape_interval_hours: int = 12
    next_run_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class Product(BaseModel):
    """Estado vivo de un producto (se sobrescribe en cada observación)."""

    id: int
    external_url: str
    name: str
    image_url: str
    current_price: Decimal
    original_price: Optional[Decimal] = None
    in_stock: bool
    first_seen_at: datetime
    last_seen_at: datetime

    class Config:
        from_attributes = True


class ProductSnapshot(BaseModel):
    """Registro inmutable de los campos rastreados, escrito solo si hubo cambio."""

    id: int
    scrape_run_id: int
    product_id: int
    name: str
    price: Decimal
    original_price: Optional[Decimal] = None
    in_stock: bool
    image_url: str
    scraped_at: datetime

    class Config:
        from_attributes = True


class ScrapeRun(BaseModel):
    """Una corrida de scraping de una categoría."""

    id: int
    category_id: int
    status: ScrapeStatus
    started_at: datetime
    completed_at: Optional[datetime] = None
    total_products: int = 0
    new_products: int = 0
    price_changes: int = 0
    sold_out: int = 0
    back_in_stock: int = 0
    pages_scraped: int = 0
    duration_ms: Optional[int] = None
    error_message: Optional[str] = None

    class Config:
        from_attributes = True


class ParsedProduct(BaseModel):
    """Producto extraído de una tarjeta del listado."""

    external_url: str
    name: str
    image_url: str
    current_price: Decimal
    original_price: Optional[Decimal] = None
    in_stock: bool


class ParsedCategoryPage(BaseModel):
    """Resultado de parsear una página de categoría."""

    products: list[ParsedProduct] = []
    next_page_url: Optional[str] = None
    parser_warnings: list[str] = []


class PersistedScrapeStats(BaseModel):
    """Contadores producidos por la persistencia de una corrida."""

    total_products: int
    new_products: int
    price_changes: int
    pages_scraped: int
    parser_warnings: list[str] = []
    missing_product_urls: list[str] = []


class ScrapeCategoryResult(PersistedScrapeStats):
    """Resultado de scrapear una categoría completa."""

    scrape_run_id: int
    status: ScrapeStatus = ScrapeStatus.COMPLETED
    duration_ms: int = Field(default=0, ge=0)
