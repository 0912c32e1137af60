"""
Event Models
Canonical order events produced by the event normalizer and consumed by the order processor
"""
from typing import Optional, List, Dict, Any
from enum import Enum
from pydantic import BaseModel, Field


class EventSource(str, Enum):
    SHOPIFY = "shopify"
    CSV = "csv"
    MANUAL = "manual"
    TEST = "test"


class EventType(str, Enum):
    ORDER_CREATED = "order_created"
    ORDER_DELIVERED = "order_delivered"
    ORDER_CANCELLED = "order_cancelled"
    ORDER_RETURNED = "order_returned"
    ORDER_UPDATED = "order_updated"


class OrderStatus(str, Enum):
    CREATED = "created"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    RETURNED = "returned"


class ConsentStatus(str, Enum):
    PENDING = "pending"
    OPT_IN = "opt_in"
    OPT_OUT = "opt_out"


class EventCustomer(BaseModel):
    phone: Optional[str] = None
    name: Optional[str] = None


class EventOrder(BaseModel):
    status: str = "created"
    created_at: Optional[str] = None
    delivered_at: Optional[str] = None


class EventItem(BaseModel):
    external_product_id: Optional[str] = None
    name: str
    url: Optional[str] = None


class NormalizedEvent(BaseModel):
    """Source-independent order event"""
    merchant_id: str
    integration_id: Optional[str] = None
    source: EventSource
    event_type: EventType
    occurred_at: str
    external_order_id: str = Field(..., min_length=1)
    customer: Optional[EventCustomer] = None
    order: Optional[EventOrder] = None
    items: List[EventItem] = Field(default_factory=list)
    consent_status: Optional[ConsentStatus] = None

    class Config:
        use_enum_values = False


class IngestResult(BaseModel):
    idempotency_key: str
    duplicate: bool
    event_row_id: Optional[str] = None


class ProcessResult(BaseModel):
    user_id: str
    order_id: str
    created: bool


class BatchProcessResult(BaseModel):
    processed: int = 0
    errors: int = 0


class CSVRowError(BaseModel):
    row: int
    error: str


class CSVParseSummary(BaseModel):
    total_rows: int = 0
    valid_rows: int = 0
    invalid_rows: int = 0
    unique_orders: int = 0


class CSVParseResult(BaseModel):
    success: bool
    events: List[NormalizedEvent] = Field(default_factory=list)
    errors: List[CSVRowError] = Field(default_factory=list)
    summary: CSVParseSummary = Field(default_factory=CSVParseSummary)
    metadata: Dict[str, Any] = Field(default_factory=dict)
