"""Database connection, unit of work y esquema."""
import sqlite3
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterator, Optional, TypeVar

from pricewatch.config.settings import DatabaseConfig
from pricewatch.utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class TransactionTimeoutError(sqlite3.OperationalError):
    """La transacción superó su tiempo máximo y fue interrumpida."""


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_db_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Serializar fecha en UTC ISO-8601 con microsegundos (orden lexicográfico = cronológico)."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


SCHEMA = [
    '''
    CREATE TABLE IF NOT EXISTS categories (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        slug TEXT NOT NULL UNIQUE,
        name_et TEXT NOT NULL,
        name_en TEXT NOT NULL,
        parent_id INTEGER REFERENCES categories (id),
        is_active BOOLEAN NOT NULL DEFAULT 1,
        scrape_interval_hours INTEGER NOT NULL DEFAULT 12,
        next_run_at TEXT,
        created_at TEXT NOT NULL
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS products (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        external_url TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL,
        image_url TEXT NOT NULL,
        current_price TEXT NOT NULL,
        original_price TEXT,
        in_stock BOOLEAN NOT NULL,
        first_seen_at TEXT NOT NULL,
        last_seen_at TEXT NOT NULL
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS product_categories (
        product_id INTEGER NOT NULL REFERENCES products (id) ON DELETE CASCADE,
        category_id INTEGER NOT NULL REFERENCES categories (id) ON DELETE CASCADE,
        UNIQUE (product_id, category_id)
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS scrape_runs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        category_id INTEGER NOT NULL REFERENCES categories (id),
        status TEXT NOT NULL,
        started_at TEXT NOT NULL,
        completed_at TEXT,
        total_products INTEGER NOT NULL DEFAULT 0,
        new_products INTEGER NOT NULL DEFAULT 0,
        price_changes INTEGER NOT NULL DEFAULT 0,
        sold_out INTEGER NOT NULL DEFAULT 0,
        back_in_stock INTEGER NOT NULL DEFAULT 0,
        pages_scraped INTEGER NOT NULL DEFAULT 0,
        duration_ms INTEGER,
        error_message TEXT
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS product_snapshots (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        scrape_run_id INTEGER NOT NULL REFERENCES scrape_runs (id),
        product_id INTEGER NOT NULL REFERENCES products (id) ON DELETE CASCADE,
        name TEXT NOT NULL,
        price TEXT NOT NULL,
        original_price TEXT,
        in_stock BOOLEAN NOT NULL,
        image_url TEXT NOT NULL,
        scraped_at TEXT NOT NULL
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS change_reports (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        scrape_run_id INTEGER NOT NULL UNIQUE REFERENCES scrape_runs (id),
        total_changes INTEGER NOT NULL,
        created_at TEXT NOT NULL
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS change_items (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        change_report_id INTEGER NOT NULL REFERENCES change_reports (id) ON DELETE CASCADE,
        product_id INTEGER NOT NULL REFERENCES products (id),
        change_type TEXT NOT NULL,
        old_price TEXT,
        new_price TEXT,
        old_stock_status BOOLEAN,
        new_stock_status BOOLEAN,
        UNIQUE (change_report_id, product_id, change_type)
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        email TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'free',
        is_active BOOLEAN NOT NULL DEFAULT 1,
        last_digest_sent_at TEXT,
        created_at TEXT NOT NULL
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS notification_channels (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL REFERENCES users (id) ON DELETE CASCADE,
        channel_type TEXT NOT NULL,
        destination TEXT NOT NULL,
        is_default BOOLEAN NOT NULL DEFAULT 0,
        is_active BOOLEAN NOT NULL DEFAULT 1
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS user_subscriptions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL REFERENCES users (id) ON DELETE CASCADE,
        category_id INTEGER NOT NULL REFERENCES categories (id) ON DELETE CASCADE,
        is_active BOOLEAN NOT NULL DEFAULT 1,
        UNIQUE (user_id, category_id)
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS notification_deliveries (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        change_report_id INTEGER NOT NULL REFERENCES change_reports (id) ON DELETE CASCADE,
        user_id INTEGER NOT NULL REFERENCES users (id) ON DELETE CASCADE,
        notification_channel_id INTEGER NOT NULL REFERENCES notification_channels (id) ON DELETE CASCADE,
        status TEXT NOT NULL DEFAULT 'pending',
        sent_at TEXT,
        error_message TEXT,
        created_at TEXT NOT NULL,
        UNIQUE (change_report_id, notification_channel_id)
    )
    ''',
    # Índices para mejorar rendimiento
    'CREATE INDEX IF NOT EXISTS idx_snapshots_run ON product_snapshots (scrape_run_id)',
    'CREATE INDEX IF NOT EXISTS idx_snapshots_product_time ON product_snapshots (product_id, scraped_at DESC)',
    'CREATE INDEX IF NOT EXISTS idx_runs_category_status ON scrape_runs (category_id, status, started_at)',
    'CREATE INDEX IF NOT EXISTS idx_deliveries_status ON notification_deliveries (status, user_id)',
]


class Database:
    """Acceso a SQLite. Cada proceso crea una instancia y la pasa a los componentes."""

    def __init__(self, config: Optional[DatabaseConfig] = None):
        self.config = config or DatabaseConfig()
        self.db_path = self.config.db_path

    def _connect(self, timeout: float) -> sqlite3.Connection:
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            self.db_path,
            timeout=timeout,
            isolation_level=None,  # transacciones explícitas
            check_same_thread=False,
        )
        conn.execute('PRAGMA journal_mode=WAL')
        conn.execute(f'PRAGMA busy_timeout={int(timeout * 1000)}')
        conn.execute('PRAGMA foreign_keys=ON')
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def get_connection(self) -> Iterator[sqlite3.Connection]:
        """Conexión en modo autocommit, para lecturas y escrituras de una sola sentencia."""
        conn = self._connect(self.config.busy_timeout)
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(
        self,
        max_wait: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> Iterator[sqlite3.Connection]:
        """
        Unit of work: commit si el bloque termina bien, rollback ante cualquier error.

        Args:
            max_wait: segundos máximos esperando el lock de escritura
            timeout: segundos máximos de vida de la transacción
        """
        conn = self._connect(max_wait if max_wait is not None else self.config.busy_timeout)
        deadline = time.monotonic() + timeout if timeout is not None else None
        if deadline is not None:
            conn.set_progress_handler(lambda: 1 if time.monotonic() > deadline else 0, 1000)

        try:
            conn.execute('BEGIN IMMEDIATE')
            try:
                yield conn
            except BaseException:
                conn.set_progress_handler(None, 0)
                conn.rollback()
                raise
            conn.commit()
        except sqlite3.OperationalError as e:
            if deadline is not None and time.monotonic() > deadline:
                logger.error(f"Transaction exceeded {timeout}s and was rolled back")
                raise TransactionTimeoutError(f"Transaction exceeded {timeout}s timeout") from e
            logger.error(f"Database error: {e}")
            raise
        finally:
            conn.close()

    def run_in_transaction(
        self,
        work: Callable[[sqlite3.Connection], T],
        max_wait: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> T:
        """Ejecutar `work(conn)` dentro de una única transacción."""
        with self.transaction(max_wait=max_wait, timeout=timeout) as conn:
            return work(conn)

    def initialize_schema(self) -> None:
        """Inicializar esquema de base de datos."""
        with self.transaction() as conn:
            for statement in SCHEMA:
                conn.execute(statement)
        logger.info(f"Database schema initialized at {self.db_path}")
