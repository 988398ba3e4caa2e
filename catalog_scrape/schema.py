from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class HostPolicyDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    allowed: bool = True                      # False only when robots blocks "/"
    disallowed_paths: Tuple[str, ...] = ()
    expires_at: float                         # clock seconds


class RequestAttempt(BaseModel):
    model_config = ConfigDict(frozen=True)

    url: str
    headers: Dict[str, str]


class NormalizedPrice(BaseModel):
    model_config = ConfigDict(frozen=True)

    amount: Optional[float] = None
    currency: Optional[str] = None            # ISO-4217-like code


def is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, dict)):
        return len(value) == 0
    return False


class ExtractedFields(BaseModel):
    """
    Raw, pre-normalization extraction output.

    Acts as an accumulator: sources are merged in priority order and the
    first non-empty value for a field is kept (first-non-empty-wins).
    """

    title: Optional[str] = None
    description: Optional[str] = None
    brand: Optional[str] = None
    raw_price: Optional[str] = None
    currency_hint: Optional[str] = None
    rating: Optional[float] = None
    review_count: Optional[int] = None
    availability: Optional[str] = None
    image: Optional[str] = None
    features: List[str] = Field(default_factory=list)
    offer_url: Optional[str] = None

    def fill(self, **values: Any) -> "ExtractedFields":
        for name, value in values.items():
            if name not in type(self).model_fields:
                raise KeyError(f"unknown extracted field: {name}")
            if isinstance(value, str):
                value = value.strip()
            if is_empty(getattr(self, name)) and not is_empty(value):
                setattr(self, name, value)
        return self

    def merge(self, other: "ExtractedFields") -> "ExtractedFields":
        return self.fill(**{name: getattr(other, name) for name in type(other).model_fields})

    def missing(self) -> List[str]:
        return [name for name in type(self).model_fields if is_empty(getattr(self, name))]


class ProductExtractionResult(BaseModel):
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    id: str                                   # host + slug, stable per page
    source_url: str                           # URL that actually succeeded
    domain: Optional[str] = None              # registered domain, e.g. "example.co.uk"
    title: Optional[str] = None
    description: Optional[str] = None
    brand: Optional[str] = None
    price_text: Optional[str] = None
    price_number: Optional[float] = None
    currency: Optional[str] = None
    rating: Optional[float] = None
    review_count: Optional[int] = None
    availability: Optional[str] = None
    image: Optional[str] = None
    features: List[str] = Field(default_factory=list)
    offer_url: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)
