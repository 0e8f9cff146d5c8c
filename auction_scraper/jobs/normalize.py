from __future__ import annotations

import re
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation

from auction_scraper.schemas.listings import ListingStatus, NormalizedListing, RawListing, Tenure

PRICE_RE = re.compile(r"^([A-Z]+)\s*([\d,]+\.?\d*)$")
NUMBER_RE = re.compile(r"[\d,]+\.?\d*")
INTEGER_RE = re.compile(r"\d[\d,]*")
DEFAULT_CURRENCY = "RM"
DEFAULT_LAND_AREA_UNIT = "sqft"

STATUS_MAP = {
    "reserved": ListingStatus.RESERVED,
    "called off": ListingStatus.CALLED_OFF,
}
TENURE_MAP = {
    "freehold": Tenure.FREEHOLD,
    "leasehold": Tenure.LEASEHOLD,
}
LAND_AREA_UNITS = (
    ("acre", "acre"),
    ("hectare", "hectare"),
    ("sq.m", "sqm"),
    ("sqm", "sqm"),
    ("m2", "sqm"),
    ("sq.ft", "sqft"),
    ("sqft", "sqft"),
)


def parse_price(text: str | None, *, default_currency: str = DEFAULT_CURRENCY) -> tuple[str, Decimal]:
    """Split ``"RM 1,250,000.00"`` into ``("RM", Decimal("1250000.00"))``."""
    match = PRICE_RE.match((text or "").strip())
    if not match:
        return default_currency, Decimal("0")
    return match.group(1), _to_decimal(match.group(2))


def parse_date(text: str | None, *, today: date | None = None) -> date:
    """Parse ``dd/mm/yyyy``; anything else falls back to today."""
    fallback = today or datetime.now(timezone.utc).date()
    parts = (text or "").strip().split("/")
    if len(parts) != 3 or not all(part.strip().isdecimal() for part in parts):
        return fallback
    day, month, year = (int(part) for part in parts)
    try:
        return date(year, month, day)
    except ValueError:
        return fallback


def map_status(text: str | None) -> ListingStatus:
    return STATUS_MAP.get((text or "").strip().lower(), ListingStatus.ACTIVE)


def map_tenure(text: str | None) -> Tenure:
    return TENURE_MAP.get((text or "").strip().lower(), Tenure.NONE)


def parse_land_area(text: str | None, *, default_unit: str = DEFAULT_LAND_AREA_UNIT) -> tuple[Decimal, str]:
    raw = (text or "").strip()
    match = NUMBER_RE.search(raw)
    amount = _to_decimal(match.group(0)) if match else Decimal("0")
    lowered = raw.lower()
    for marker, unit in LAND_AREA_UNITS:
        if marker in lowered:
            return amount, unit
    return amount, default_unit


def parse_investor_count(text: str | None) -> int:
    match = INTEGER_RE.search(text or "")
    if not match:
        return 0
    return int(match.group(0).replace(",", ""))


def normalize_listing(
    raw: RawListing,
    job_id: str,
    *,
    default_currency: str = DEFAULT_CURRENCY,
    default_land_area_unit: str = DEFAULT_LAND_AREA_UNIT,
    today: date | None = None,
) -> NormalizedListing:
    currency, price = parse_price(raw.price_text, default_currency=default_currency)
    _, market_value = parse_price(raw.market_value_text, default_currency=default_currency)
    land_area, land_area_unit = parse_land_area(raw.land_area, default_unit=default_land_area_unit)
    return NormalizedListing(
        address=raw.address.strip(),
        home_type=raw.home_type.strip(),
        currency=currency,
        price=price,
        market_value=market_value,
        auction_date=parse_date(raw.auction_date, today=today),
        tenure=map_tenure(raw.tenure),
        land_area=land_area,
        land_area_unit=land_area_unit,
        registered_investor=parse_investor_count(raw.registered_investor),
        entry_created=parse_date(raw.created_date, today=today),
        status=map_status(raw.status),
        scrape_job_id=job_id,
    )


def _to_decimal(raw: str) -> Decimal:
    cleaned = raw.replace(",", "")
    if not cleaned or cleaned == ".":
        return Decimal("0")
    try:
        return Decimal(cleaned)
    except InvalidOperation:
        return Decimal("0")
