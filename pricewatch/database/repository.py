"""Repository pattern para categorías, productos, snapshots y corridas."""
import sqlite3
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterable, List, Optional

from pricewatch.config.categories import DEFAULT_SCRAPE_INTERVAL, parent_slug
from pricewatch.database.connection import to_db_timestamp, utc_now
from pricewatch.models.change import CurrentRunProduct, SnapshotState
from pricewatch.models.product import (
    Category, ParsedProduct, Product, ScrapeRun, ScrapeStatus,
)
from pricewatch.utils.logger import get_logger

logger = get_logger(__name__)


def _price(value: Optional[Decimal]) -> Optional[str]:
    return None if value is None else str(value)


class CategoryRepository:
    """Repository para categorías."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def get(self, category_id: int) -> Optional[Category]:
        row = self.conn.execute('SELECT * FROM categories WHERE id = ?', (category_id,)).fetchone()
        return Category(**dict(row)) if row else None

    def get_by_slug(self, slug: str) -> Optional[Category]:
        row = self.conn.execute('SELECT * FROM categories WHERE slug = ?', (slug,)).fetchone()
        return Category(**dict(row)) if row else None

    def resolve(self, id_or_slug: str) -> Optional[Category]:
        """Buscar por id numérico o por slug."""
        if str(id_or_slug).isdigit():
            category = self.get(int(id_or_slug))
            if category:
                return category
        return self.get_by_slug(str(id_or_slug))

    def list_all(self) -> List[Category]:
        rows = self.conn.execute('SELECT * FROM categories ORDER BY slug').fetchall()
        return [Category(**dict(row)) for row in rows]

    def list_due(self, now: datetime) -> List[Category]:
        """Categorías activas cuyo próximo scraping ya venció (o nunca corrieron)."""
        rows = self.conn.execute('''
            SELECT * FROM categories
            WHERE is_active = 1
            AND (next_run_at IS NULL OR next_run_at <= ?)
            ORDER BY slug
        ''', (to_db_timestamp(now),)).fetchall()
        return [Category(**dict(row)) for row in rows]

    def schedule_next_run(self, category_id: int, after: datetime) -> None:
        row = self.conn.execute(
            'SELECT scrape_interval_hours FROM categories WHERE id = ?', (category_id,)
        ).fetchone()
        if not row:
            return
        next_run = after + timedelta(hours=row['scrape_interval_hours'])
        self.conn.execute(
            'UPDATE categories SET next_run_at = ? WHERE id = ?',
            (to_db_timestamp(next_run), category_id),
        )

    def upsert_reference(
        self,
        definitions: Iterable[dict],
        scrape_interval_hours: int = DEFAULT_SCRAPE_INTERVAL,
    ) -> int:
        """Sembrar categorías estáticas y enlazar padres por segmentos del slug."""
        definitions = list(definitions)
        now = to_db_timestamp(utc_now())
        for definition in definitions:
            self.conn.execute('''
                INSERT INTO categories (slug, name_et, name_en, is_active, scrape_interval_hours, created_at)
                VALUES (?, ?, ?, 1, ?, ?)
                ON CONFLICT (slug) DO UPDATE SET
                    name_et = excluded.name_et,
                    name_en = excluded.name_en,
                    is_active = 1,
                    scrape_interval_hours = excluded.scrape_interval_hours,
                    next_run_at = NULL
            ''', (
                definition['slug'], definition['name_et'], definition['name_en'],
                scrape_interval_hours, now,
            ))

        for definition in definitions:
            parent = parent_slug(definition['slug'])
            parent_row = self.get_by_slug(parent) if parent else None
            self.conn.execute(
                'UPDATE categories SET parent_id = ? WHERE slug = ?',
                (parent_row.id if parent_row else None, definition['slug']),
            )
        return len(definitions)


class ProductRepository:
    """Repository para productos, enlaces a categorías y snapshots."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def get_by_url(self, external_url: str) -> Optional[Product]:
        row = self.conn.execute(
            'SELECT * FROM products WHERE external_url = ?', (external_url,)
        ).fetchone()
        return Product(**dict(row)) if row else None

    def insert(self, product: ParsedProduct, seen_at: datetime) -> Product:
        ts = to_db_timestamp(seen_at)
        cursor = self.conn.execute('''
            INSERT INTO products (
                external_url, name, image_url, current_price, original_price,
                in_stock, first_seen_at, last_seen_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        ''', (
            product.external_url, product.name, product.image_url,
            _price(product.current_price), _price(product.original_price),
            product.in_stock, ts, ts,
        ))
        return Product(
            id=cursor.lastrowid,
            first_seen_at=seen_at,
            last_seen_at=seen_at,
            **product.model_dump(),
        )

    def update_observation(self, product_id: int, product: ParsedProduct, seen_at: datetime) -> None:
        """Sobrescribir la fila viva con la última observación, cambie o no."""
        self.conn.execute('''
            UPDATE products SET
                name = ?,
                image_url = ?,
                current_price = ?,
                original_price = ?,
                in_stock = ?,
                last_seen_at = ?
            WHERE id = ?
        ''', (
            product.name, product.image_url,
            _price(product.current_price), _price(product.original_price),
            product.in_stock, to_db_timestamp(seen_at), product_id,
        ))

    def link_category(self, product_id: int, category_id: int) -> None:
        self.conn.execute('''
            INSERT INTO product_categories (product_id, category_id)
            VALUES (?, ?)
            ON CONFLICT (product_id, category_id) DO NOTHING
        ''', (product_id, category_id))

    def add_snapshot(
        self,
        scrape_run_id: int,
        product_id: int,
        product: ParsedProduct,
        scraped_at: datetime,
    ) -> int:
        cursor = self.conn.execute('''
            INSERT INTO product_snapshots (
                scrape_run_id, product_id, name, price, original_price,
                in_stock, image_url, scraped_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        ''', (
            scrape_run_id, product_id, product.name,
            _price(product.current_price), _price(product.original_price),
            product.in_stock, product.image_url, to_db_timestamp(scraped_at),
        ))
        return cursor.lastrowid

    def find_missing_urls(self, category_id: int, scraped_urls: Iterable[str]) -> List[str]:
        """Productos enlazados a la categoría que no aparecieron en esta corrida."""
        scraped = set(scraped_urls)
        rows = self.conn.execute('''
            SELECT p.external_url FROM product_categories pc
            JOIN products p ON p.id = pc.product_id
            WHERE pc.category_id = ?
            ORDER BY p.external_url
        ''', (category_id,)).fetchall()
        return [row['external_url'] for row in rows if row['external_url'] not in scraped]

    def count_snapshots(self, scrape_run_id: Optional[int] = None) -> int:
        if scrape_run_id is None:
            row = self.conn.execute('SELECT COUNT(*) AS count FROM product_snapshots').fetchone()
        else:
            row = self.conn.execute(
                'SELECT COUNT(*) AS count FROM product_snapshots WHERE scrape_run_id = ?',
                (scrape_run_id,),
            ).fetchone()
        return row['count']

    def snapshots_for_run(self, scrape_run_id: int) -> List[CurrentRunProduct]:
        """Snapshots de la corrida junto con su producto dueño."""
        rows = self.conn.execute('''
            SELECT s.product_id, s.price, s.original_price, s.in_stock, s.scraped_at,
                   p.external_url, p.name, p.first_seen_at
            FROM product_snapshots s
            JOIN products p ON p.id = s.product_id
            WHERE s.scrape_run_id = ?
            ORDER BY s.scraped_at ASC, s.id ASC
        ''', (scrape_run_id,)).fetchall()
        return [
            CurrentRunProduct(
                product_id=row['product_id'],
                external_url=row['external_url'],
                name=row['name'],
                first_seen_at=row['first_seen_at'],
                snapshot=SnapshotState(
                    product_id=row['product_id'],
                    price=row['price'],
                    original_price=row['original_price'],
                    in_stock=row['in_stock'],
                    scraped_at=row['scraped_at'],
                ),
            )
            for row in rows
        ]

    def latest_snapshots_before(
        self,
        product_ids: Iterable[int],
        before: datetime,
    ) -> dict[int, SnapshotState]:
        """Snapshot más reciente por producto estrictamente anterior a `before`."""
        ids = sorted(set(product_ids))
        if not ids:
            return {}
        placeholders = ','.join('?' for _ in ids)
        rows = self.conn.execute(f'''
            SELECT product_id, price, original_price, in_stock, scraped_at
            FROM product_snapshots
            WHERE product_id IN ({placeholders})
            AND scraped_at < ?
            ORDER BY product_id ASC, scraped_at DESC, id DESC
        ''', (*ids, to_db_timestamp(before))).fetchall()

        latest: dict[int, SnapshotState] = {}
        for row in rows:
            if row['product_id'] not in latest:
                latest[row['product_id']] = SnapshotState(**dict(row))
        return latest


class ScrapeRunRepository:
    """Repository para corridas de scraping."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def get(self, scrape_run_id: int) -> Optional[ScrapeRun]:
        row = self.conn.execute('SELECT * FROM scrape_runs WHERE id = ?', (scrape_run_id,)).fetchone()
        return ScrapeRun(**dict(row)) if row else None

    def create(
        self,
        category_id: int,
        started_at: datetime,
        status: ScrapeStatus = ScrapeStatus.RUNNING,
        completed_at: Optional[datetime] = None,
    ) -> ScrapeRun:
        cursor = self.conn.execute('''
            INSERT INTO scrape_runs (category_id, status, started_at, completed_at)
            VALUES (?, ?, ?, ?)
        ''', (category_id, status.value, to_db_timestamp(started_at), to_db_timestamp(completed_at)))
        return self.get(cursor.lastrowid)

    def list_recent(self, limit: int = 20) -> List[ScrapeRun]:
        rows = self.conn.execute(
            'SELECT * FROM scrape_runs ORDER BY started_at DESC LIMIT ?', (limit,)
        ).fetchall()
        return [ScrapeRun(**dict(row)) for row in rows]

    def mark_completed(
        self,
        scrape_run_id: int,
        *,
        total_products: int,
        new_products: int,
        price_changes: int,
        pages_scraped: int,
        duration_ms: int,
        completed_at: datetime,
    ) -> bool:
        """Cerrar una corrida RUNNING. False si otro proceso ya la cerró."""
        cursor = self.conn.execute('''
            UPDATE scrape_runs SET
                status = ?,
                total_products = ?,
                new_products = ?,
                price_changes = ?,
                sold_out = 0,
                back_in_stock = 0,
                pages_scraped = ?,
                duration_ms = ?,
                completed_at = ?
            WHERE id = ? AND status = ?
        ''', (
            ScrapeStatus.COMPLETED.value, total_products, new_products, price_changes,
            pages_scraped, duration_ms, to_db_timestamp(completed_at), scrape_run_id,
            ScrapeStatus.RUNNING.value,
        ))
        return cursor.rowcount > 0

    def mark_failed(
        self,
        scrape_run_id: int,
        error_message: str,
        completed_at: datetime,
        duration_ms: Optional[int] = None,
    ) -> bool:
        cursor = self.conn.execute('''
            UPDATE scrape_runs SET
                status = ?,
                error_message = ?,
                duration_ms = COALESCE(?, duration_ms),
                completed_at = ?
            WHERE id = ? AND status = ?
        ''', (
            ScrapeStatus.FAILED.value, error_message, duration_ms,
            to_db_timestamp(completed_at), scrape_run_id, ScrapeStatus.RUNNING.value,
        ))
        return cursor.rowcount > 0

    def update_stock_counters(self, scrape_run_id: int, sold_out: int, back_in_stock: int) -> None:
        self.conn.execute(
            'UPDATE scrape_runs SET sold_out = ?, back_in_stock = ? WHERE id = ?',
            (sold_out, back_in_stock, scrape_run_id),
        )

    def has_earlier_completed(self, category_id: int, before: datetime) -> bool:
        row = self.conn.execute('''
            SELECT id FROM scrape_runs
            WHERE category_id = ? AND status = ? AND started_at < ?
            ORDER BY started_at DESC
            LIMIT 1
        ''', (category_id, ScrapeStatus.COMPLETED.value, to_db_timestamp(before))).fetchone()
        return row is not None

    def find_stale_running(self, started_before: datetime) -> List[ScrapeRun]:
        rows = self.conn.execute('''
            SELECT * FROM scrape_runs
            WHERE status = ? AND started_at < ?
            ORDER BY started_at ASC
        ''', (ScrapeStatus.RUNNING.value, to_db_timestamp(started_before))).fetchall()
        return [ScrapeRun(**dict(row)) for row in rows]
