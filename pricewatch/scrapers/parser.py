"""Parser del listado de categoría: HTML -> productos estructurados."""
import json
import re
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, List, Optional
from urllib.parse import urljoin, urlsplit, urlunsplit

from bs4 import BeautifulSoup
from bs4.element import Tag

from pricewatch.models.product import ParsedCategoryPage, ParsedProduct
from pricewatch.scrapers.selectors import (
    IMAGE_ATTRIBUTES, IN_STOCK_CLASSES, IN_STOCK_TEXT, OUT_OF_STOCK_CLASSES,
    OUT_OF_STOCK_TEXT, PRODUCT_SELECTORS,
)
from pricewatch.utils.logger import get_logger

logger = get_logger(__name__)

TWO_PLACES = Decimal("0.01")


class ProductParseError(ValueError):
    """Una tarjeta de producto no se pudo interpretar (se omite con warning)."""


class PriceParseError(ProductParseError):
    """Texto de precio irreconocible."""


def parse_price(value: str) -> Decimal:
    """
    Normalizar texto de precio a Decimal con dos decimales.

    Acepta coma o punto decimal, separadores de miles y símbolos de moneda:
        "12,99 €" -> 12.99, "1.299,00 €" -> 1299.00, "1,299.00" -> 1299.00
    """
    text = re.sub(r"\s", "", value or "")
    text = text.replace("EUR", "").replace("€", "")

    if "," in text and "." in text:
        # El último separador es el decimal
        if text.rfind(",") > text.rfind("."):
            text = text.replace(".", "").replace(",", ".")
        else:
            text = text.replace(",", "")
    else:
        # Separador seguido de exactamente tres dígitos = miles
        text = re.sub(r"(\d)[.,](?=\d{3}\b)", r"\1", text)
        text = text.replace(",", ".", 1)

    match = re.search(r"-?\d+(?:\.\d{1,2})?", text)
    if not match:
        raise PriceParseError(f"Unable to parse price value: {value!r}")
    return Decimal(match.group(0)).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def build_absolute_url(value: str, base_url: str) -> str:
    return urljoin(base_url, value)


def normalize_external_url(value: str, base_url: str) -> str:
    """URL absoluta sin fragmento ni barra final."""
    parts = urlsplit(build_absolute_url(value, base_url))
    path = parts.path
    if path != "/" and path.endswith("/"):
        path = path.rstrip("/") or "/"
    return urlunsplit((parts.scheme, parts.netloc, path, parts.query, ""))


def _first_text(card: Tag, selector: str) -> str:
    element = card.select_one(selector)
    return element.get_text(strip=True) if element else ""


def _resolve_in_stock(card: Tag) -> bool:
    """Cascada: clase de la tarjeta -> marcador explícito -> texto."""
    card_class = " ".join(card.get("class") or []).lower()
    if any(marker in card_class for marker in OUT_OF_STOCK_CLASSES):
        return False
    if any(marker in card_class for marker in IN_STOCK_CLASSES):
        return True

    if card.select_one(PRODUCT_SELECTORS["out_of_stock"]) is not None:
        return False
    if card.select_one(PRODUCT_SELECTORS["in_stock"]) is not None:
        return True

    card_text = card.get_text(" ", strip=True).lower()
    if any(marker in card_text for marker in OUT_OF_STOCK_TEXT):
        return False
    if any(marker in card_text for marker in IN_STOCK_TEXT):
        return True

    raise ProductParseError("Unable to determine stock state")


def parse_product_card(
    card: Tag,
    base_url: str,
    price_parser: Callable[[str], Decimal] = parse_price,
) -> ParsedProduct:
    link = card.select_one(PRODUCT_SELECTORS["product_link"]) or card.select_one("a")
    link_href = link.get("href") if link else None
    name = _first_text(card, PRODUCT_SELECTORS["title"])

    image = card.select_one(PRODUCT_SELECTORS["image"])
    image_url = None
    if image is not None:
        image_url = next((image.get(attr) for attr in IMAGE_ATTRIBUTES if image.get(attr)), None)

    if not link_href or not name or not image_url:
        raise ProductParseError("Missing required product fields")

    original_price_text = _first_text(card, PRODUCT_SELECTORS["original_price"])
    sale_price_text = _first_text(card, PRODUCT_SELECTORS["sale_price"])
    price_text = _first_text(card, PRODUCT_SELECTORS["current_price"])
    effective_price = sale_price_text or price_text
    if not effective_price:
        raise ProductParseError("Missing product price")

    return ParsedProduct(
        external_url=normalize_external_url(link_href, base_url),
        name=name,
        image_url=build_absolute_url(image_url, base_url),
        current_price=price_parser(effective_price),
        original_price=price_parser(original_price_text) if original_price_text else None,
        in_stock=_resolve_in_stock(card),
    )


def _extract_template_markup(soup: BeautifulSoup) -> Optional[str]:
    """Algunas páginas traen el listado como string JSON dentro de un <script type=text/template>."""
    script = soup.select_one(PRODUCT_SELECTORS["product_template_script"])
    if script is None:
        return None
    template_text = (script.string or script.get_text() or "").strip()
    if not template_text:
        return None

    try:
        markup = json.loads(template_text)
        if isinstance(markup, str):
            return markup
    except json.JSONDecodeError:
        pass
    return (
        re.sub(r'^"|"$', "", template_text)
        .replace('\\"', '"')
        .replace("\\/", "/")
    )


def parse_category_page(
    html: str,
    base_url: str,
    price_parser: Callable[[str], Decimal] = parse_price,
) -> ParsedCategoryPage:
    """Parsear una página; errores por producto se acumulan como warnings."""
    soup = BeautifulSoup(html, "html.parser")
    template_markup = _extract_template_markup(soup)
    product_dom = BeautifulSoup(template_markup, "html.parser") if template_markup else soup

    products: List[ParsedProduct] = []
    warnings: List[str] = []
    for index, card in enumerate(product_dom.select(PRODUCT_SELECTORS["product_card"]), start=1):
        try:
            products.append(parse_product_card(card, base_url, price_parser))
        except ProductParseError as e:
            logger.debug(f"Skipping product card {index}: {e}")
            warnings.append(f"Product card {index}: {e}")

    next_link = soup.select_one(PRODUCT_SELECTORS["next_page"])
    next_href = next_link.get("href") if next_link else None

    return ParsedCategoryPage(
        products=products,
        next_page_url=build_absolute_url(next_href, base_url) if next_href else None,
        parser_warnings=warnings,
    )
