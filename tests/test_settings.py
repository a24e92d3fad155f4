import pytest

from pricewatch.config.categories import CATEGORIES, parent_slug
from pricewatch.config.settings import (
    ConfigurationError, NotificationConfig, ScraperConfig, Settings,
)
from pricewatch.database.repository import CategoryRepository


def test_defaults_are_valid():
    settings = Settings().validate()
    assert settings.scraper.base_url == "https://mabrik.ee"
    assert settings.scraper.max_pages == 200
    assert settings.notifications.digest_cooldown_hours == 6


def test_from_env_reads_overrides(monkeypatch):
    monkeypatch.setenv("SCRAPER_RETRY_COUNT", "1")
    monkeypatch.setenv("SCRAPER_MIN_DELAY", "0.5")
    monkeypatch.setenv("SCRAPER_MAX_DELAY", "0.75")
    monkeypatch.setenv("EMAIL_PROVIDER", "Resend")
    monkeypatch.setenv("RESEND_API_KEY", "re_test")
    monkeypatch.setenv("DATABASE_PATH", "/tmp/pricewatch-env.db")
    monkeypatch.setenv("SCRAPER_PERSIST_MAX_WAIT", "5")
    monkeypatch.setenv("SCRAPER_PERSIST_TIMEOUT", "90")
    monkeypatch.setenv("EMAIL_SEND_TIMEOUT", "7.5")
    monkeypatch.setenv("DIGEST_COOLDOWN_HOURS", "12")

    settings = Settings.from_env().validate()

    assert settings.scraper.max_retries == 1
    assert settings.scraper.min_delay_seconds == 0.5
    assert settings.scraper.max_delay_seconds == 0.75
    assert settings.notifications.email_provider == "resend"
    assert settings.database.db_path == "/tmp/pricewatch-env.db"
    assert settings.scraper.persist_max_wait == 5.0
    assert settings.scraper.persist_timeout == 90.0
    assert settings.notifications.send_timeout == 7.5
    assert settings.notifications.digest_cooldown_hours == 12


@pytest.mark.parametrize("settings, message", [
    (Settings(scraper=ScraperConfig(min_delay_seconds=3, max_delay_seconds=1)), "SCRAPER_MAX_DELAY"),
    (Settings(scraper=ScraperConfig(max_retries=9)), "SCRAPER_RETRY_COUNT"),
    (Settings(scraper=ScraperConfig(max_pages=0)), "SCRAPER_MAX_PAGES"),
    (Settings(notifications=NotificationConfig(email_provider="resend")), "RESEND_API_KEY"),
    (Settings(notifications=NotificationConfig(email_provider="pigeon")), "EMAIL_PROVIDER"),
    (Settings(notifications=NotificationConfig(digest_cooldown_hours=0)), "DIGEST_COOLDOWN_HOURS"),
])
def test_validate_fails_fast(settings, message):
    with pytest.raises(ConfigurationError, match=message):
        settings.validate()


def test_invalid_integer_env_is_a_configuration_error(monkeypatch):
    monkeypatch.setenv("SCRAPER_MAX_PAGES", "many")
    with pytest.raises(ConfigurationError):
        ScraperConfig.from_env()


def test_parent_slug():
    assert parent_slug("kodu-ja-kollektsioon/figuurid-ja-manguasjad") == "kodu-ja-kollektsioon"
    assert parent_slug("lauamangud") is None


def test_seeding_categories_links_parents_and_is_repeatable(db):
    with db.transaction() as conn:
        CategoryRepository(conn).upsert_reference(CATEGORIES)
    with db.transaction() as conn:
        repo = CategoryRepository(conn)
        repo.upsert_reference(CATEGORIES)
        categories = repo.list_all()
        parent = repo.get_by_slug("kodu-ja-kollektsioon")
        child = repo.get_by_slug("kodu-ja-kollektsioon/figuurid-ja-manguasjad")

    assert len(categories) == 12
    assert child.parent_id == parent.id
    assert parent.parent_id is None
    assert all(c.scrape_interval_hours == 12 for c in categories)
