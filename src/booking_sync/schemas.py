"""Pydantic models for storefront orders and calendar events."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

BOOKING_DATE_PROPERTY = "Booking Date"
BOOKING_TIME_PROPERTY = "Booking Time"


def _coerce_id(v: Any) -> Any:
    if isinstance(v, int):
        return str(v)
    return v


# =============================================================================
# Storefront Orders
# =============================================================================


class LineItemProperty(BaseModel):
    """Free-form name/value pair attached to a line item."""

    model_config = ConfigDict(extra="allow")

    name: str
    value: Optional[str] = None

    @field_validator("value", mode="before")
    @classmethod
    def stringify_value(cls, v: Any) -> Any:
        if v is None or isinstance(v, str):
            return v
        return str(v)


class LineItem(BaseModel):
    """A single purchased product line."""

    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    name: Optional[str] = None
    title: Optional[str] = None
    product_id: Optional[str] = None
    variant_id: Optional[str] = None
    quantity: int = 1
    properties: list[LineItemProperty] = Field(default_factory=list)

    @field_validator("id", "product_id", "variant_id", mode="before")
    @classmethod
    def coerce_ids(cls, v: Any) -> Any:
        return _coerce_id(v)

    def property_value(self, name: str) -> Optional[str]:
        for prop in self.properties:
            if prop.name == name:
                return prop.value
        return None

    @property
    def has_booking(self) -> bool:
        names = {prop.name for prop in self.properties}
        return BOOKING_DATE_PROPERTY in names and BOOKING_TIME_PROPERTY in names


class Contact(BaseModel):
    """Customer or address block. Either `name` or first/last name may be set."""

    model_config = ConfigDict(extra="allow")

    name: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None

    @property
    def display_name(self) -> Optional[str]:
        if self.name:
            return self.name
        if self.first_name or self.last_name:
            return f"{self.first_name or ''} {self.last_name or ''}".strip()
        return None


class Order(BaseModel):
    """Storefront order as returned by the order API."""

    model_config = ConfigDict(extra="allow")

    id: str
    order_number: Optional[str] = None
    financial_status: Optional[str] = None
    fulfillment_status: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    currency: Optional[str] = None
    total_price: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    line_items: list[LineItem] = Field(default_factory=list)
    customer: Optional[Contact] = None
    billing_address: Optional[Contact] = None
    shipping_address: Optional[Contact] = None

    @field_validator("id", "order_number", "total_price", mode="before")
    @classmethod
    def coerce_ids(cls, v: Any) -> Any:
        if isinstance(v, float):
            return str(v)
        return _coerce_id(v)

    @property
    def is_paid(self) -> bool:
        return self.financial_status == "paid"


# =============================================================================
# Calendar
# =============================================================================


class CalendarEvent(BaseModel):
    """Event on the external calendar. start/end are timezone-aware."""

    id: Optional[str] = None
    link: Optional[str] = None
    summary: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    metadata: dict[str, str] = Field(default_factory=dict)


class EventRequest(BaseModel):
    """Payload for creating a booking event."""

    summary: str
    description: str
    start: datetime
    end: datetime
    timezone: str
    metadata: dict[str, str] = Field(default_factory=dict)


class EventCreateResult(BaseModel):
    """Outcome of a create call on the calendar."""

    success: bool
    event_id: Optional[str] = None
    event_link: Optional[str] = None
    error: Optional[str] = None
