from datetime import date
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class ListingStatus(str, Enum):
    ACTIVE = "ACTIVE"
    RESERVED = "RESERVED"
    CALLED_OFF = "CALLED_OFF"


class Tenure(str, Enum):
    NONE = "NONE"
    FREEHOLD = "FREEHOLD"
    LEASEHOLD = "LEASEHOLD"


class RawListing(BaseModel):
    """Text fields exactly as scraped from one listing card."""

    status: str = ""
    address: str = ""
    home_type: str = Field(default="", alias="homeType")
    price_text: str = Field(default="", alias="priceText")
    market_value_text: str = Field(default="", alias="marketValueText")
    auction_date: str = Field(default="", alias="auctionDate")
    tenure: str = ""
    land_area: str = Field(default="", alias="landArea")
    registered_investor: str = Field(default="0", alias="registeredInvestor")
    created_date: str = Field(default="", alias="createdDate")

    model_config = ConfigDict(populate_by_name=True)


class NormalizedListing(BaseModel):
    address: str
    home_type: str
    currency: str
    price: Decimal
    market_value: Decimal
    auction_date: date
    tenure: Tenure
    land_area: Decimal
    land_area_unit: str
    registered_investor: int
    entry_created: date
    status: ListingStatus
    scrape_job_id: str
