"""
CSV Importer
Parses order export CSVs into normalized events (one event per order)
"""
import csv
import io
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from recete.models.events import (
    CSVParseResult,
    CSVParseSummary,
    CSVRowError,
    EventCustomer,
    EventItem,
    EventOrder,
    EventSource,
    EventType,
    NormalizedEvent,
)
from recete.services.event_normalizer import EVENT_ORDER_STATUS, normalize_phone
from recete.utils.exceptions import InvalidPhoneError

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ("external_order_id", "customer_phone")

# Substring match on the lowercased status column (English and Turkish)
STATUS_KEYWORDS = [
    (EventType.ORDER_DELIVERED, ("delivered", "teslim")),
    (EventType.ORDER_CANCELLED, ("cancelled", "canceled", "iptal")),
    (EventType.ORDER_RETURNED, ("returned", "iade")),
]


def event_type_for_row(row: Dict[str, str]) -> EventType:
    status = (row.get("status") or "").lower()
    if status:
        for event_type, keywords in STATUS_KEYWORDS:
            if any(keyword in status for keyword in keywords):
                return event_type
        return EventType.ORDER_CREATED
    if row.get("delivered_at"):
        return EventType.ORDER_DELIVERED
    return EventType.ORDER_CREATED


def _failed(error: str) -> CSVParseResult:
    return CSVParseResult(success=False, errors=[CSVRowError(row=0, error=error)])


def parse_csv(content: str, merchant_id: str, integration_id: Optional[str] = None) -> CSVParseResult:
    """
    Parse CSV content into normalized events

    Rows sharing an external_order_id are grouped into one event; each row
    with a product_name contributes an item. The first row of a group decides
    the event type, phone and name.

    Args:
        content: CSV text with a header row
        merchant_id: Owning merchant
        integration_id: Optional CSV integration id

    Returns:
        CSVParseResult with events, per-row errors and a summary
    """
    rows = [row for row in csv.reader(io.StringIO(content.strip())) if any(value.strip() for value in row)]
    if len(rows) < 2:
        return _failed("CSV file is empty or has no data rows")

    header = [column.strip().lower() for column in rows[0]]
    missing = [column for column in REQUIRED_COLUMNS if column not in header]
    if missing:
        return _failed(f"Missing required columns: {', '.join(missing)}")

    errors: List[CSVRowError] = []
    groups: Dict[str, List[Dict[str, str]]] = {}
    valid_rows = 0

    for row_number, values in enumerate(rows[1:], start=2):
        if len(values) != len(header):
            errors.append(CSVRowError(
                row=row_number,
                error=f"Column count mismatch (expected {len(header)}, got {len(values)})"
            ))
            continue

        row = {column: value.strip() for column, value in zip(header, values)}
        if not row.get("external_order_id") or not row.get("customer_phone"):
            errors.append(CSVRowError(row=row_number, error="Missing external_order_id or customer_phone"))
            continue

        row["_row"] = str(row_number)
        groups.setdefault(row["external_order_id"], []).append(row)
        valid_rows += 1

    events: List[NormalizedEvent] = []
    now = datetime.now(timezone.utc).isoformat()

    for external_order_id, group_rows in groups.items():
        first = group_rows[0]
        try:
            phone = normalize_phone(first["customer_phone"])
        except InvalidPhoneError:
            errors.append(CSVRowError(
                row=int(first["_row"]),
                error=f"Invalid phone number for order {external_order_id}: {first['customer_phone']}"
            ))
            continue

        event_type = event_type_for_row(first)
        status = EVENT_ORDER_STATUS.get(event_type)

        events.append(NormalizedEvent(
            merchant_id=merchant_id,
            integration_id=integration_id,
            source=EventSource.CSV,
            event_type=event_type,
            occurred_at=first.get("delivered_at") or first.get("created_at") or now,
            external_order_id=external_order_id,
            customer=EventCustomer(phone=phone, name=first.get("customer_name") or None),
            order=EventOrder(
                status=status.value if status else "created",
                created_at=first.get("created_at") or now,
                delivered_at=first.get("delivered_at") or None
            ),
            items=[
                EventItem(
                    external_product_id=row.get("product_external_id") or None,
                    name=row["product_name"],
                    url=row.get("product_url") or None
                )
                for row in group_rows if row.get("product_name")
            ]
        ))

    logger.info(
        f"📄 Parsed CSV for merchant {merchant_id}: {len(events)} orders, "
        f"{valid_rows} valid rows, {len(errors)} errors"
    )

    return CSVParseResult(
        success=not errors or bool(events),
        events=events,
        errors=errors,
        summary=CSVParseSummary(
            total_rows=len(rows) - 1,
            valid_rows=valid_rows,
            invalid_rows=len(errors),
            unique_orders=len(events)
        )
    )
