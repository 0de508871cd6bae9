"""
Domain types shared by the order builder and the session.

OrderParams and its nested structures serialize to the exact field names of
the Kraken WebSocket v2 add_order request.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class ChannelKind(str, Enum):
    PUBLIC = "public"
    PRIVATE = "private"


class ChannelState(str, Enum):
    """
    Channel lifecycle states.

    DISCONNECTED -> CONNECTING -> CONNECTED -> AUTHENTICATING -> AUTHENTICATED
                        |             |                               |
                        v             v                               v
                      ERROR      DISCONNECTED  <----------------------+
    """
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    ERROR = "error"

    @property
    def is_open(self) -> bool:
        return self in (ChannelState.CONNECTED, ChannelState.AUTHENTICATING, ChannelState.AUTHENTICATED)


ORDER_TYPES: Tuple[str, ...] = (
    "limit",
    "market",
    "iceberg",
    "stop-loss",
    "stop-loss-limit",
    "take-profit",
    "take-profit-limit",
    "trailing-stop",
    "trailing-stop-limit",
    "settle-position",
)

CONDITIONAL_ORDER_TYPES: Tuple[str, ...] = (
    "limit",
    "stop-loss",
    "stop-loss-limit",
    "take-profit",
    "take-profit-limit",
    "trailing-stop",
    "trailing-stop-limit",
)

AXIS_TRIGGER = "trigger"
AXIS_LIMIT = "limit"


@dataclass(frozen=True)
class OrderBlock:
    """A block placed on the grid. col 0 = entry, 1 = exit; row 0 = top, 1 = middle, 2 = bottom."""
    id: str
    order_type: str
    col: int
    row: int
    y_position: float
    axes: Tuple[str, ...] = ()
    axis: int = 1
    abrv: str = ""
    linked_block_id: Optional[str] = None

    def has_axis(self, axis: str) -> bool:
        return axis in self.axes


@dataclass(frozen=True)
class OrderTrigger:
    reference: str
    price: str
    price_type: Optional[str] = "static"

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"reference": self.reference, "price": self.price}
        if self.price_type is not None:
            out["price_type"] = self.price_type
        return out


@dataclass(frozen=True)
class ConditionalOrder:
    order_type: str
    limit_price: Optional[str] = None
    limit_price_type: Optional[str] = None
    trigger_price: Optional[str] = None
    trigger_price_type: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return _drop_none({
            "order_type": self.order_type,
            "limit_price": self.limit_price,
            "limit_price_type": self.limit_price_type,
            "trigger_price": self.trigger_price,
            "trigger_price_type": self.trigger_price_type,
        })


@dataclass
class OrderParams:
    order_type: str
    side: str
    order_qty: str
    symbol: str
    limit_price: Optional[str] = None
    limit_price_type: Optional[str] = None
    triggers: Optional[OrderTrigger] = None
    conditional: Optional[ConditionalOrder] = None
    time_in_force: Optional[str] = None
    margin: Optional[bool] = None
    post_only: Optional[bool] = None
    reduce_only: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        """Exchange payload; unset optionals are omitted."""
        return _drop_none({
            "order_type": self.order_type,
            "side": self.side,
            "order_qty": self.order_qty,
            "symbol": self.symbol,
            "limit_price": self.limit_price,
            "limit_price_type": self.limit_price_type,
            "triggers": self.triggers.to_dict() if self.triggers else None,
            "conditional": self.conditional.to_dict() if self.conditional else None,
            "time_in_force": self.time_in_force,
            "margin": self.margin,
            "post_only": self.post_only,
            "reduce_only": self.reduce_only,
        })


@dataclass(frozen=True)
class OrderBuildContext:
    symbol: str
    current_price: float
    quantity: str
    side: Optional[str] = None
    time_in_force: Optional[str] = None
    margin: Optional[bool] = None
    post_only: Optional[bool] = None
    reduce_only: Optional[bool] = None


@dataclass
class OrderResponse:
    method: str
    req_id: Optional[int]
    success: bool
    result: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def order_id(self) -> Optional[str]:
        return self.result.get("order_id") if isinstance(self.result, dict) else None

    @classmethod
    def from_message(cls, msg: Dict[str, Any]) -> "OrderResponse":
        error = msg.get("error")
        success = msg.get("success")
        if success is None:
            success = not error
        result = msg.get("result")
        return cls(
            method=str(msg.get("method") or ""),
            req_id=msg.get("req_id"),
            success=bool(success),
            result=result if isinstance(result, dict) else {},
            error=str(error) if error else None,
        )


def _drop_none(d: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in d.items() if v is not None}
