"""
Pydantic models for GDAX feed events, order book snapshots and the
result types passed between pipeline components.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class SnapshotParseError(ValueError):
    """Raised when an order book payload cannot be parsed into typed levels."""
    pass


# Column order of the messages table
MESSAGE_COLUMNS: Tuple[str, ...] = (
    "type", "product_id", "trade_id", "order_id", "sequence",
    "maker_order_id", "taker_order_id", "time",
    "remaining_size", "new_size", "old_size", "size", "price",
    "side", "reason", "order_type",
    "funds", "new_funds", "old_funds", "message",
)

# Column order of the snapshots table
SNAPSHOT_COLUMNS: Tuple[str, ...] = (
    "product_id", "sequence", "bid_ask", "price", "size", "order_id",
)


class Channel(BaseModel):
    """A feed channel and the products it is requested for."""
    name: str = Field(..., description="Channel name, e.g. 'full'")
    product_ids: List[str] = Field(default_factory=list, description="Products to receive")


class EventRecord(BaseModel):
    """A single event from the GDAX feed, as stored in the messages table."""
    model_config = ConfigDict(extra="ignore")

    type: str = Field(..., description="Event kind: open, done, match, change, received, error, ...")
    product_id: Optional[str] = None
    trade_id: Optional[int] = None
    order_id: Optional[str] = None
    sequence: Optional[int] = Field(None, description="Per-product sequence number, passed through as-is")
    maker_order_id: Optional[str] = None
    taker_order_id: Optional[str] = None
    time: Optional[datetime] = Field(None, description="Exchange timestamp")
    remaining_size: Optional[Decimal] = None
    new_size: Optional[Decimal] = None
    old_size: Optional[Decimal] = None
    size: Optional[Decimal] = None
    price: Optional[Decimal] = None
    side: Optional[str] = None
    reason: Optional[str] = None
    order_type: Optional[str] = None
    funds: Optional[Decimal] = None
    new_funds: Optional[Decimal] = None
    old_funds: Optional[Decimal] = None
    message: Optional[str] = Field(None, description="Only set on error events")

    @field_validator('time')
    @classmethod
    def ensure_utc(cls, v):
        """Treat naive timestamps as UTC."""
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @classmethod
    def from_json(cls, raw: Union[str, bytes]) -> "EventRecord":
        """
        Decode a raw feed frame.

        Numbers that arrive as JSON floats are read as Decimal so no
        precision is lost before validation.
        """
        data = json.loads(raw, parse_float=Decimal)
        if not isinstance(data, dict):
            raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
        return cls.model_validate(data)

    def to_row(self) -> Tuple[Any, ...]:
        """Values in messages table column order."""
        return tuple(getattr(self, column) for column in MESSAGE_COLUMNS)


def parse_decimal(value: Any, field_name: str) -> Decimal:
    """
    Parse an upstream numeric string into a finite Decimal.

    Raises:
        SnapshotParseError: If the value is not a finite number
    """
    if not isinstance(value, str):
        raise SnapshotParseError(f"could not convert {field_name} to decimal: {value!r}")
    try:
        parsed = Decimal(value)
    except InvalidOperation:
        raise SnapshotParseError(f"could not convert {field_name} to decimal: {value!r}") from None
    if not parsed.is_finite():
        raise SnapshotParseError(f"{field_name} must be finite, got {value!r}")
    return parsed


class Level(BaseModel):
    """One (price, size, order id) entry of an order book side."""
    price: Decimal
    size: Decimal
    order_id: str

    @classmethod
    def from_triple(cls, values: Any) -> "Level":
        """Parse an upstream [price, size, order_id] string triple."""
        if not isinstance(values, (list, tuple)) or len(values) != 3:
            raise SnapshotParseError(f"expected [price, size, order_id], got {values!r}")
        price = parse_decimal(values[0], "price")
        size = parse_decimal(values[1], "size")
        order_id = values[2]
        if not isinstance(order_id, str):
            raise SnapshotParseError(f"invalid order id: {order_id!r}")
        return cls(price=price, size=size, order_id=order_id)


class SnapshotRecord(BaseModel):
    """A full level 3 order book for one product."""
    product_id: str
    sequence: int
    bids: List[Level] = Field(default_factory=list)
    asks: List[Level] = Field(default_factory=list)

    @classmethod
    def from_order_book(cls, product_id: str, payload: Dict[str, Any]) -> "SnapshotRecord":
        """
        Build a snapshot from the REST order book response.

        Every level is parsed before the record is built, so one malformed
        triple fails the whole snapshot.

        Raises:
            SnapshotParseError: If the payload or any level is malformed
        """
        if not isinstance(payload, dict):
            raise SnapshotParseError(f"order book for {product_id} is not an object")

        sequence = payload.get("sequence")
        if isinstance(sequence, bool) or not isinstance(sequence, int):
            raise SnapshotParseError(f"order book for {product_id} has invalid sequence: {sequence!r}")

        sides = {}
        for side in ("bids", "asks"):
            raw_levels = payload.get(side, [])
            if not isinstance(raw_levels, list):
                raise SnapshotParseError(f"order book for {product_id} has invalid {side}")
            try:
                sides[side] = [Level.from_triple(values) for values in raw_levels]
            except SnapshotParseError as e:
                raise SnapshotParseError(f"could not parse {side[:-1]} for {product_id}: {e}") from e

        return cls(product_id=product_id, sequence=sequence, bids=sides["bids"], asks=sides["asks"])

    @property
    def level_count(self) -> int:
        return len(self.bids) + len(self.asks)

    def to_rows(self) -> List[Tuple[Any, ...]]:
        """One snapshots table row per level, bids first."""
        rows = []
        for tag, levels in (("bid", self.bids), ("ask", self.asks)):
            for level in levels:
                rows.append((self.product_id, self.sequence, tag, level.price, level.size, level.order_id))
        return rows


@dataclass
class FeedResult:
    """Outcome of one feed read: either an event or an error, never both."""
    event: Optional[EventRecord] = None
    error: Optional[Exception] = None

    def __post_init__(self):
        if (self.event is None) == (self.error is None):
            raise ValueError("FeedResult requires exactly one of event or error")

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class SnapshotCycleResult:
    """All outcomes of one snapshot poll cycle, keyed by product id."""
    snapshots: Dict[str, SnapshotRecord] = field(default_factory=dict)
    errors: Dict[str, Exception] = field(default_factory=dict)
    started_at: float = 0.0
    finished_at: float = 0.0

    @property
    def resolved(self) -> int:
        return len(self.snapshots) + len(self.errors)


@dataclass
class FlushResult:
    """Outcome of one batch buffer flush."""
    kind: str
    count: int
    error: Optional[Exception] = None
    rows_written: int = 0
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None
