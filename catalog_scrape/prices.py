import re
from typing import Optional, Union

from .schema import NormalizedPrice

CURRENCY_SYMBOLS = {
    "US$": "USD",
    "C$": "CAD",
    "A$": "AUD",
    "NZ$": "NZD",
    "HK$": "HKD",
    "S$": "SGD",
    "R$": "BRL",
    "zł": "PLN",
    "€": "EUR",
    "£": "GBP",
    "¥": "JPY",
    "₹": "INR",
    "₩": "KRW",
    "₽": "RUB",
    "₺": "TRY",
    "₴": "UAH",
    "$": "USD",
}

# Longest first so "C$" is seen before "$".
_SYMBOLS_BY_LENGTH = sorted(CURRENCY_SYMBOLS, key=len, reverse=True)

_ISO_RE = re.compile(r"(?<![A-Za-z])([A-Z]{3})(?![A-Za-z])")
_NUMBER_RE = re.compile(r"\d[\d.,]*")


def detect_currency(text: str, hint: Optional[str] = None) -> Optional[str]:
    for sym in _SYMBOLS_BY_LENGTH:
        if sym in text:
            return CURRENCY_SYMBOLS[sym]
    m = _ISO_RE.search(text)
    if m:
        return m.group(1)
    if hint and hint.strip():
        return hint.strip().upper()
    return None


def parse_amount(text: str) -> Optional[float]:
    """
    First numeric run as a float, locale-aware.

    With both separators present the last one is the decimal point; a lone
    comma is a decimal point; otherwise commas are thousands separators.
    """
    m = _NUMBER_RE.search(text)
    if not m:
        return None
    number = re.sub(r"[^0-9.,]", "", m.group(0)).rstrip(".,")
    if not number:
        return None

    if "." in number and "," in number:
        if number.rfind(",") > number.rfind("."):
            number = number.replace(".", "").replace(",", ".")
        else:
            number = number.replace(",", "")
    elif "," in number:
        number = number.replace(",", ".")

    try:
        return float(number)
    except ValueError:
        return None


def normalize_price(raw: Union[str, int, float, None], currency_hint: Optional[str] = None) -> NormalizedPrice:
    if raw is None:
        text = ""
    elif isinstance(raw, (int, float)):
        text = repr(float(raw))
    else:
        text = str(raw)
    return NormalizedPrice(amount=parse_amount(text), currency=detect_currency(text, currency_hint))
