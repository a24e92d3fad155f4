"""Reconciliar productos scrapeados contra el estado guardado."""
import sqlite3
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

from pricewatch.database.connection import Database, utc_now
from pricewatch.database.repository import ProductRepository
from pricewatch.models.product import ParsedProduct, PersistedScrapeStats, Product
from pricewatch.utils.logger import get_logger

logger = get_logger(__name__)


def dedupe_by_url(products: Iterable[ParsedProduct]) -> Dict[str, ParsedProduct]:
    """Última observación gana."""
    unique: Dict[str, ParsedProduct] = {}
    for product in products:
        unique[product.external_url] = product
    return unique


def has_tracked_changes(existing: Product, incoming: ParsedProduct) -> bool:
    """Comparación exacta (Decimal) de nombre, imagen, precios y stock."""
    return (
        existing.name != incoming.name
        or existing.image_url != incoming.image_url
        or existing.in_stock != incoming.in_stock
        or existing.current_price != incoming.current_price
        or existing.original_price != incoming.original_price
    )


def upsert_products(
    conn: sqlite3.Connection,
    *,
    scrape_run_id: int,
    category_id: int,
    products: Dict[str, ParsedProduct],
    pages_scraped: int,
    parser_warnings: List[str],
    clock: Callable[[], datetime] = utc_now,
) -> PersistedScrapeStats:
    """Aplicar una corrida usando el handle transaccional recibido."""
    repo = ProductRepository(conn)
    new_products = 0
    price_changes = 0

    for product in products.values():
        now = clock()
        existing = repo.get_by_url(product.external_url)

        if existing is None:
            created = repo.insert(product, seen_at=now)
            repo.link_category(created.id, category_id)
            repo.add_snapshot(scrape_run_id, created.id, product, scraped_at=now)
            new_products += 1
            continue

        repo.link_category(existing.id, category_id)
        changed = has_tracked_changes(existing, product)
        repo.update_observation(existing.id, product, seen_at=now)

        if changed:
            repo.add_snapshot(scrape_run_id, existing.id, product, scraped_at=now)
        if existing.current_price != product.current_price:
            price_changes += 1

    missing = repo.find_missing_urls(category_id, products.keys())

    return PersistedScrapeStats(
        total_products=len(products),
        new_products=new_products,
        price_changes=price_changes,
        pages_scraped=pages_scraped,
        parser_warnings=parser_warnings,
        missing_product_urls=missing,
    )


def persist_scrape_results(
    db: Database,
    *,
    scrape_run_id: int,
    category_id: int,
    products: Iterable[ParsedProduct],
    pages_scraped: int,
    parser_warnings: Optional[List[str]] = None,
    max_wait: Optional[float] = None,
    timeout: Optional[float] = None,
    clock: Callable[[], datetime] = utc_now,
) -> PersistedScrapeStats:
    """Persistir todos los productos de una corrida en una sola transacción acotada."""
    unique = dedupe_by_url(products)

    stats = db.run_in_transaction(
        lambda conn: upsert_products(
            conn,
            scrape_run_id=scrape_run_id,
            category_id=category_id,
            products=unique,
            pages_scraped=pages_scraped,
            parser_warnings=list(parser_warnings or []),
            clock=clock,
        ),
        max_wait=max_wait,
        timeout=timeout,
    )

    logger.info(
        f"Persisted run {scrape_run_id}: {stats.total_products} products, "
        f"{stats.new_products} new, {stats.price_changes} price changes"
    )
    if stats.missing_product_urls:
        logger.warning(
            f"{len(stats.missing_product_urls)} products linked to category {category_id} "
            f"were not seen in run {scrape_run_id} (candidate delistings)"
        )
    return stats
