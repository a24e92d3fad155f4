"""Categorías de referencia de la tienda (datos estáticos)."""
from typing import Optional

SCRAPE_INTERVALS = (6, 12, 24, 48)
DEFAULT_SCRAPE_INTERVAL = 12

CATEGORIES = [
    {"slug": "eeltellimused", "name_et": "Eeltellimused", "name_en": "Pre-orders"},
    {"slug": "lauamangud", "name_et": "Lauamängud", "name_en": "Board Games"},
    {"slug": "kodu-ja-kollektsioon", "name_et": "Kodu ja kollektsioon", "name_en": "Home & Collectibles"},
    {"slug": "funko", "name_et": "Funko tooted", "name_en": "Funko Products"},
    {"slug": "miniatuurid", "name_et": "Miniatuurimängud", "name_en": "Miniature Games"},
    {"slug": "riided-ja-aksessuaarid", "name_et": "Riided ja aksessuaarid", "name_en": "Clothing & Accessories"},
    {"slug": "varvid-ja-hobitooted", "name_et": "Värvid ja hobitooted", "name_en": "Paints & Hobby Supplies"},
    {"slug": "rollimangud", "name_et": "Rollimängud", "name_en": "Role-Playing Games"},
    {"slug": "kaardimangud", "name_et": "Kaardimängud", "name_en": "Card Games"},
    {"slug": "raamatud-ja-koomiksid", "name_et": "Raamatud ja koomiksid", "name_en": "Books & Comics"},
    {
        "slug": "kodu-ja-kollektsioon/figuurid-ja-manguasjad",
        "name_et": "Figuurid ja mänguasjad",
        "name_en": "Figures & Toys",
    },
    {"slug": "lopumuuk", "name_et": "Lõpumüük", "name_en": "Clearance Sale"},
]


def parent_slug(slug: str) -> Optional[str]:
    """'a/b' -> 'a'; categorías raíz no tienen padre."""
    if "/" not in slug:
        return None
    return slug.rsplit("/", 1)[0]
