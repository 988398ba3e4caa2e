from urllib.parse import urlparse

import tldextract
from slugify import slugify

from .prices import normalize_price
from .schema import ExtractedFields, ProductExtractionResult

# Bundled public-suffix snapshot only; no network lookups at runtime.
_tld = tldextract.TLDExtract(suffix_list_urls=())


def registered_domain(url: str) -> str:
    host = urlparse(url).hostname or ""
    ext = _tld(host)
    return f"{ext.domain}.{ext.suffix}" if ext.domain and ext.suffix else host


def make_id(url: str, name: str = None):
    dom = urlparse(url).hostname or ""
    base = slugify((name or urlparse(url).path or url)[0:80])
    return f"{dom}-{base}" if base else dom


def normalize(source_url: str, fields: ExtractedFields) -> ProductExtractionResult:
    price = normalize_price(fields.raw_price, fields.currency_hint)
    return ProductExtractionResult(
        id=make_id(source_url, fields.title),
        source_url=source_url,
        domain=registered_domain(source_url),
        title=fields.title,
        description=fields.description,
        brand=fields.brand,
        price_text=fields.raw_price,
        price_number=price.amount,
        currency=price.currency,
        rating=fields.rating,
        review_count=fields.review_count,
        availability=fields.availability,
        image=fields.image,
        features=list(fields.features),
        offer_url=fields.offer_url,
    )
