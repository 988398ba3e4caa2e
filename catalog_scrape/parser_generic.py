import json
import logging
import re
from typing import Any, Dict, Iterator, List, Optional
from urllib.parse import urljoin

from bs4 import BeautifulSoup

from .errors import MetaRobotsBlocked
from .schema import ExtractedFields

logger = logging.getLogger(__name__)

PRODUCT_TYPES = {"product", "productgroup", "individualproduct", "productmodel"}
BLOCKING_ROBOTS_TOKENS = {"noindex", "nofollow", "noarchive", "none"}
PLACEHOLDER_MARKERS = ("placeholder", "loading")

META_FIELDS = {
    "title": ["meta[property='og:title']", "meta[name='twitter:title']"],
    "description": [
        "meta[property='og:description']",
        "meta[name='description']",
        "meta[name='twitter:description']",
    ],
    "image": [
        "meta[property='og:image']",
        "meta[property='og:image:secure_url']",
        "meta[name='twitter:image']",
    ],
    "raw_price": [
        "meta[property='product:price:amount']",
        "meta[property='og:price:amount']",
        "meta[itemprop='price']",
    ],
    "currency_hint": [
        "meta[property='product:price:currency']",
        "meta[property='og:price:currency']",
        "meta[itemprop='priceCurrency']",
    ],
    "brand": ["meta[property='product:brand']", "meta[property='og:brand']", "meta[itemprop='brand']"],
    "availability": ["meta[property='product:availability']", "meta[property='og:availability']"],
}

DOM_SELECTORS = {
    "title": [
        "h1#title",
        ".product-title",
        "[data-testid='product-title']",
        "h1",
        ".product-name",
        ".product-title-main",
    ],
    "raw_price": [
        ".a-price .a-offscreen",
        ".a-price-whole",
        "[data-testid='price']",
        "[itemprop='price']",
        ".price",
        ".product-price",
        ".current-price",
    ],
    "brand": ["[data-testid='brand-name']", "#bylineInfo", ".brand", ".a-brand", ".product-brand", ".manufacturer"],
    "description": [
        "[data-testid='product-description']",
        ".product-description",
        "#feature-bullets",
        ".product-details",
        ".description",
    ],
    "rating": [".a-icon-alt", "[data-testid='rating']", ".rating", ".stars", ".review-rating"],
    "review_count": [
        "[data-testid='review-count']",
        "#acrCustomerReviewText",
        ".review-count",
        ".num-reviews",
    ],
    "availability": ["[data-testid='availability']", "#availability", ".availability", ".stock-status"],
}

FEATURE_SELECTORS = [
    "#feature-bullets .a-list-item",
    ".feature-bullets li",
    ".product-features li",
    ".features li",
]

IMAGE_SELECTORS = [
    # Amazon specific
    "img[data-testid='product-image']",
    "#landingImage",
    ".a-dynamic-image",
    # Generic product image selectors
    "img.product-image",
    ".product-image img",
    ".product-photo img",
    ".main-image img",
    ".hero-image img",
    ".product-gallery img",
    ".image-gallery img",
    ".product-main-image img",
    ".product-detail-image img",
    ".product-view img",
    # Anything that looks like a product picture
    "img[class*='product']",
    "img[class*='main']",
    "img[data-src*='product']",
    "img[alt*='product']",
]

_NUMBER_RE = re.compile(r"\d+(?:[.,]\d+)?")


# ---------------------------------------------------------------------- #
# Small value helpers
# ---------------------------------------------------------------------- #
def _first(value: Any) -> Any:
    return value[0] if isinstance(value, list) and value else value


def _text(value: Any) -> Optional[str]:
    value = _first(value)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    if isinstance(value, str) and value.strip():
        return " ".join(value.split())
    return None


def _name_of(value: Any) -> Optional[str]:
    value = _first(value)
    if isinstance(value, dict):
        return _text(value.get("name"))
    return _text(value)


def _image_of(value: Any) -> Optional[str]:
    value = _first(value)
    if isinstance(value, dict):
        return _text(value.get("url") or value.get("contentUrl"))
    return _text(value)


def _availability_of(value: Any) -> Optional[str]:
    value = _text(value)
    if value and "schema.org/" in value:
        value = value.rsplit("/", 1)[-1]
    return value


def parse_rating(text: Any) -> Optional[float]:
    """First number in the text, kept only if it lies within [0, 5]."""
    text = _text(text)
    if not text:
        return None
    m = _NUMBER_RE.search(text)
    if not m:
        return None
    value = float(m.group(0).replace(",", "."))
    return value if 0 <= value <= 5 else None


def parse_count(text: Any) -> Optional[int]:
    text = _text(text)
    if not text:
        return None
    m = re.search(r"\d[\d,.\s]*", text)
    if not m:
        return None
    digits = re.sub(r"\D", "", m.group(0))
    return int(digits) if digits else None


def resolve_image(src: Optional[str], base_url: Optional[str]) -> Optional[str]:
    """Absolute image URL, or None for placeholders, data URIs and unusable paths."""
    if not src:
        return None
    src = src.strip()
    lowered = src.lower()
    if lowered.startswith("data:") or any(marker in lowered for marker in PLACEHOLDER_MARKERS):
        return None
    if src.startswith(("http://", "https://")):
        return src
    if src.startswith("//"):
        return urljoin(base_url, src) if base_url else f"https:{src}"
    if src.startswith("/"):
        return urljoin(base_url, src) if base_url else None
    return None


# ---------------------------------------------------------------------- #
# Meta robots gate
# ---------------------------------------------------------------------- #
def check_meta_robots(soup: BeautifulSoup) -> None:
    for tag in soup.find_all("meta", attrs={"name": True}):
        if tag["name"].strip().lower() not in ("robots", "googlebot"):
            continue
        tokens = {t.lower() for t in re.split(r"[,\s]+", tag.get("content") or "") if t}
        blocked = tokens & BLOCKING_ROBOTS_TOKENS
        if blocked:
            raise MetaRobotsBlocked(
                f"Page opts out of automated use via meta {tag['name']}: {', '.join(sorted(blocked))}"
            )


# ---------------------------------------------------------------------- #
# 1. JSON-LD Product annotations
# ---------------------------------------------------------------------- #
def _safe_json_loads(text: str):
    try:
        return json.loads(text)
    except ValueError:
        return None


def _iter_nodes(data: Any) -> Iterator[Dict[str, Any]]:
    if isinstance(data, list):
        for item in data:
            yield from _iter_nodes(item)
    elif isinstance(data, dict):
        yield data
        if "@graph" in data:
            yield from _iter_nodes(data["@graph"])


def is_product_node(node: Dict[str, Any]) -> bool:
    types = node.get("@type")
    if not isinstance(types, list):
        types = [types]
    for t in types:
        if isinstance(t, str) and t.rsplit("/", 1)[-1].lower() in PRODUCT_TYPES:
            return True
    return False


def product_nodes(soup: BeautifulSoup) -> List[Dict[str, Any]]:
    nodes = []
    for script in soup.find_all("script", type=lambda t: t and "ld+json" in t.lower()):
        data = _safe_json_loads(script.string or script.get_text() or "")
        if data is None:
            continue
        nodes.extend(n for n in _iter_nodes(data) if is_product_node(n))
    return nodes


def _iter_offers(offers: Any) -> Iterator[Dict[str, Any]]:
    if isinstance(offers, list):
        for offer in offers:
            yield from _iter_offers(offer)
    elif isinstance(offers, dict):
        yield offers
        # AggregateOffer may nest per-seller offers
        if "offers" in offers:
            yield from _iter_offers(offers["offers"])


def fields_from_offers(offers: Any, base_url: Optional[str]) -> ExtractedFields:
    acc = ExtractedFields()
    for offer in _iter_offers(offers):
        price_spec = _first(offer.get("priceSpecification"))
        price_spec = price_spec if isinstance(price_spec, dict) else {}
        offer_url = _text(offer.get("url"))
        acc.fill(
            raw_price=_text(offer.get("price")) or _text(offer.get("lowPrice")) or _text(price_spec.get("price")),
            currency_hint=_text(offer.get("priceCurrency")) or _text(price_spec.get("priceCurrency")),
            availability=_availability_of(offer.get("availability")),
            offer_url=urljoin(base_url or "", offer_url) if offer_url else None,
        )
    return acc


def fields_from_product(node: Dict[str, Any], base_url: Optional[str]) -> ExtractedFields:
    rating = node.get("aggregateRating")
    rating = rating if isinstance(rating, dict) else {}
    acc = ExtractedFields().fill(
        title=_text(node.get("name")),
        description=_text(node.get("description")),
        brand=_name_of(node.get("brand")) or _name_of(node.get("manufacturer")),
        image=resolve_image(_image_of(node.get("image")), base_url),
        rating=parse_rating(rating.get("ratingValue")),
        review_count=parse_count(rating.get("reviewCount")) or parse_count(rating.get("ratingCount")),
    )
    return acc.merge(fields_from_offers(node.get("offers"), base_url))


def extract_structured(soup: BeautifulSoup, base_url: Optional[str] = None) -> ExtractedFields:
    acc = ExtractedFields()
    for node in product_nodes(soup):
        acc.merge(fields_from_product(node, base_url))
    return acc


# ---------------------------------------------------------------------- #
# 2. Open Graph / product meta tags
# ---------------------------------------------------------------------- #
def extract_meta(soup: BeautifulSoup, base_url: Optional[str] = None) -> ExtractedFields:
    acc = ExtractedFields()
    for field, selectors in META_FIELDS.items():
        for sel in selectors:
            tag = soup.select_one(sel)
            value = _text(tag.get("content")) if tag else None
            if field == "image":
                value = resolve_image(value, base_url)
            if value:
                acc.fill(**{field: value})
                break
    return acc


# ---------------------------------------------------------------------- #
# 3. DOM heuristics
# ---------------------------------------------------------------------- #
def _select_text(soup: BeautifulSoup, selectors: List[str]) -> Optional[str]:
    for sel in selectors:
        for node in soup.select(sel):
            value = node.get("content") or node.get_text(" ", strip=True)
            value = _text(value)
            if value:
                return value
    return None


def _select_image(soup: BeautifulSoup, base_url: Optional[str]) -> Optional[str]:
    for sel in IMAGE_SELECTORS:
        img = soup.select_one(sel)
        if img is None:
            continue
        src = img.get("src") or img.get("data-src") or img.get("data-lazy") or img.get("data-old-hires")
        resolved = resolve_image(src, base_url)
        if resolved:
            return resolved
    return None


def extract_dom(soup: BeautifulSoup, base_url: Optional[str] = None) -> ExtractedFields:
    acc = ExtractedFields()
    for field, selectors in DOM_SELECTORS.items():
        value = _select_text(soup, selectors)
        if field == "rating":
            acc.fill(rating=parse_rating(value))
        elif field == "review_count":
            acc.fill(review_count=parse_count(value))
        else:
            acc.fill(**{field: value})

    if soup.title and soup.title.string:
        acc.fill(title=_text(soup.title.string))

    for sel in FEATURE_SELECTORS:
        features = [_text(li.get_text(" ", strip=True)) for li in soup.select(sel)]
        features = [f for f in features if f]
        if features:
            acc.fill(features=features)
            break

    acc.fill(image=_select_image(soup, base_url))
    return acc


def extract_generic(html: str, url: Optional[str] = None) -> ExtractedFields:
    """
    Structured data first, then meta tags, then DOM selectors; the first
    source to provide a field wins. Raises MetaRobotsBlocked if the page
    opts out of indexing.
    """
    soup = BeautifulSoup(html, "lxml")
    check_meta_robots(soup)

    fields = extract_structured(soup, url)
    fields.merge(extract_meta(soup, url))
    fields.merge(extract_dom(soup, url))

    missing = fields.missing()
    if missing:
        logger.debug("No value for %s on %s", ", ".join(missing), url)
    return fields
