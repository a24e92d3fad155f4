import json
import os
import tempfile

os.environ.setdefault("PRICEWATCH_DATA_DIR", tempfile.mkdtemp(prefix="pricewatch-tests-"))

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from pricewatch.config.categories import CATEGORIES
from pricewatch.config.settings import DatabaseConfig, ScraperConfig
from pricewatch.database.connection import Database
from pricewatch.database.reports import ChangeReportRepository, DeliveryRepository, UserRepository
from pricewatch.database.repository import CategoryRepository, ProductRepository, ScrapeRunRepository
from pricewatch.models.change import ChangeType, PendingChangeItem
from pricewatch.models.notification import ChannelType, UserRole
from pricewatch.models.product import ParsedProduct, ScrapeStatus
from pricewatch.notifications.transport import EmailTransport, TransportError
from pricewatch.scrapers.anti_bot.headers import PolitenessDelay
from pricewatch.scrapers.fetcher import FetchError
from pricewatch.scrapers.runner import CategoryScraper

BASE_URL = "https://mabrik.ee"
T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class StepClock:
    """Reloj determinista: cada lectura avanza `step`."""

    def __init__(self, start: datetime = T0, step: timedelta = timedelta(seconds=1)):
        self.now = start
        self.step = step

    def __call__(self) -> datetime:
        current = self.now
        self.now += self.step
        return current

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingTransport(EmailTransport):
    def __init__(self, fail_for=()):
        self.sent = []
        self.fail_for = set(fail_for)

    def send(self, message):
        if message.to in self.fail_for:
            raise TransportError(f"Mailbox unavailable: {message.to}")
        self.sent.append(message)


class FakeFetcher:
    """Sirve HTML desde un dict url -> html y registra las URLs pedidas."""

    def __init__(self, pages, config=None):
        self.pages = dict(pages)
        self.config = config or fast_scraper_config()
        self.requested = []

    def fetch_page(self, url):
        self.requested.append(url)
        if url not in self.pages:
            raise FetchError(f"Request to {url} failed with status 404")
        return self.pages[url]

    def close(self):
        pass


def fast_scraper_config(**overrides) -> ScraperConfig:
    values = {"min_delay_seconds": 0.0, "max_delay_seconds": 0.0, "retry_base_delay": 0.0}
    values.update(overrides)
    return ScraperConfig(**values)


def category_url(slug: str, page: int = 1) -> str:
    if page == 1:
        return f"{BASE_URL}/tootekategooria/{slug}/"
    return f"{BASE_URL}/tootekategooria/{slug}/page/{page}/"


def product_url(slug: str) -> str:
    return f"{BASE_URL}/toode/{slug}"


def product_card(slug, name, price="12,99 €", in_stock=True, original_price=None, image=True):
    stock_class = "instock" if in_stock else "outofstock"
    if original_price:
        price_html = (
            f'<del><span class="woocommerce-Price-amount amount"><bdi>{original_price}</bdi></span></del> '
            f'<ins><span class="woocommerce-Price-amount amount"><bdi>{price}</bdi></span></ins>'
        )
    else:
        price_html = f'<span class="woocommerce-Price-amount amount"><bdi>{price}</bdi></span>'
    image_html = f'<img src="/wp-content/uploads/{slug}.jpg" alt="">' if image else ""
    return (
        f'<li class="product type-product {stock_class}">'
        f'<a class="woocommerce-LoopProduct-link" href="{BASE_URL}/toode/{slug}/">'
        f"{image_html}"
        f'<h2 class="woocommerce-loop-product__title">{name}</h2>'
        f'<span class="price">{price_html}</span>'
        f"</a></li>"
    )


def category_page(cards, next_url=None, template=False):
    listing = "".join(cards)
    if template:
        listing = f'<script type="text/template">{json.dumps(listing)}</script>'
    nav = f'<nav><a class="next page-numbers" href="{next_url}">→</a></nav>' if next_url else ""
    return f'<html><body><ul class="products">{listing}</ul>{nav}</body></html>'


def run_scrape(db, clock, slug, cards, config=None):
    """Scrapear una categoría de una sola página con los productos dados."""
    fetcher = FakeFetcher({category_url(slug): category_page(cards)}, config=config)
    scraper = CategoryScraper(
        db, fetcher, delay=PolitenessDelay(0, 0, sleep=lambda s: None), clock=clock,
    )
    return scraper.scrape_category(slug)


def make_user(
    db,
    email,
    category_id=None,
    role=UserRole.FREE,
    last_digest_sent_at=None,
    name=None,
):
    with db.transaction() as conn:
        users = UserRepository(conn)
        user = users.create_user(
            email, name or email.split("@")[0], role, last_digest_sent_at=last_digest_sent_at
        )
        channel = users.add_channel(user.id, email, ChannelType.EMAIL)
        if category_id is not None:
            users.subscribe(user.id, category_id)
    return user, channel


def make_report(db, category, clock, product_slug="catan", name="Catan", old="12.99", new="14.99"):
    """Corrida completada con un reporte de una subida de precio y sus entregas PENDING."""
    with db.transaction() as conn:
        run = ScrapeRunRepository(conn).create(
            category.id, started_at=clock(), status=ScrapeStatus.COMPLETED, completed_at=clock(),
        )
        product = ProductRepository(conn).insert(
            ParsedProduct(
                external_url=product_url(product_slug),
                name=name,
                image_url=f"{BASE_URL}/wp-content/uploads/{product_slug}.jpg",
                current_price=Decimal(new),
                in_stock=True,
            ),
            seen_at=clock(),
        )
        reports = ChangeReportRepository(conn)
        report_id = reports.create(run.id, 1, created_at=clock())
        reports.add_items(report_id, [PendingChangeItem(
            product_id=product.id,
            change_type=ChangeType.PRICE_INCREASE,
            old_price=Decimal(old),
            new_price=Decimal(new),
        )])
        DeliveryRepository(conn).create_pending(
            report_id, UserRepository(conn).recipients_for_category(category.id)
        )
    return report_id


@pytest.fixture
def db(tmp_path):
    database = Database(DatabaseConfig(db_path=str(tmp_path / "test.db")))
    database.initialize_schema()
    return database


@pytest.fixture
def seeded_db(db):
    with db.transaction() as conn:
        CategoryRepository(conn).upsert_reference(CATEGORIES)
    return db


@pytest.fixture
def clock():
    return StepClock()


@pytest.fixture
def category(seeded_db):
    with seeded_db.get_connection() as conn:
        return CategoryRepository(conn).get_by_slug("lauamangud")


@pytest.fixture
def transport():
    return RecordingTransport()
