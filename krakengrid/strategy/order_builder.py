"""
Order builder: maps blocks placed on the strategy grid to Kraken order params.

Grid geometry:
    col 0 = entry (buy), col 1 = exit (sell)
    row 0 = top (above market), row 1 = middle (primary), row 2 = bottom (below market)

Every function here is pure: inputs are never mutated and a fresh OrderParams
is built per call.
"""

from __future__ import annotations

from decimal import ROUND_DOWN, Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from krakengrid.config.config import DEFAULT_SYMBOL
from krakengrid.core.models import (
    AXIS_LIMIT,
    AXIS_TRIGGER,
    CONDITIONAL_ORDER_TYPES,
    ORDER_TYPES,
    ConditionalOrder,
    OrderBlock,
    OrderBuildContext,
    OrderParams,
    OrderTrigger,
)
from krakengrid.errors import ValidationError

# 1% of slider travel = 0.1% price change
PRICE_SCALE_FACTOR = 0.1

# Longest names first so "stop-loss-limit" wins over "stop-loss" and "limit".
_TYPES_BY_LENGTH = sorted((t for t in ORDER_TYPES if t != "settle-position"), key=len, reverse=True)

LIMIT_PRICE_REQUIRED = frozenset({
    "limit",
    "iceberg",
    "stop-loss-limit",
    "take-profit-limit",
    "trailing-stop-limit",
})

TRIGGER_REQUIRED = frozenset({
    "stop-loss",
    "stop-loss-limit",
    "take-profit",
    "take-profit-limit",
    "trailing-stop",
    "trailing-stop-limit",
})


def map_order_type(name: str) -> str:
    return name if name in ORDER_TYPES else "limit"


def determine_side(col: int) -> str:
    return "buy" if col == 0 else "sell"


def calculate_price_from_position(y_position: float, current_price: float, row: int, col: int) -> float:
    """
    Offset current_price by the block's slider position.

    Row 0 is always above market and row 2 always below. In the middle row the
    entry column sits below market and the exit column above.
    """
    percent_change = (y_position / 100) * PRICE_SCALE_FACTOR * 100
    if row == 0:
        above = True
    elif row == 2:
        above = False
    else:
        above = col != 0
    multiplier = 1 + percent_change / 100 if above else 1 - percent_change / 100
    return current_price * multiplier


def price_precision(price: float, symbol: str = DEFAULT_SYMBOL) -> int:
    if "BTC" in symbol or "XBT" in symbol:
        return 1
    if price < 1:
        return 6
    if price < 100:
        return 4
    return 2


def format_price_for_api(price: float, symbol: str = DEFAULT_SYMBOL) -> str:
    """Fixed-point string truncated to the symbol's price precision."""
    precision = price_precision(price, symbol)
    quantum = Decimal(1).scaleb(-precision)
    return str(Decimal(repr(float(price))).quantize(quantum, rounding=ROUND_DOWN))


def extract_order_type_from_id(block_id: str) -> str:
    """Block ids look like "<base>-<type>-<counter>"; fall back to "limit"."""
    for order_type in _TYPES_BY_LENGTH:
        if f"-{order_type}-" in block_id:
            return order_type
    for part in block_id.split("-"):
        if part in ORDER_TYPES:
            return part
    return "limit"


def _field(entry: Any, *names: str, default: Any = None) -> Any:
    for name in names:
        if isinstance(entry, Mapping):
            if name in entry:
                return entry[name]
        elif hasattr(entry, name):
            return getattr(entry, name)
    return default


def block_from_grid(entry: Any, col: int, row: int) -> OrderBlock:
    """
    Convert a raw grid entry (dict from the UI, or any object with the same
    attributes) into an OrderBlock positioned at (col, row).
    """
    if isinstance(entry, OrderBlock):
        if entry.col == col and entry.row == row:
            return entry
        return OrderBlock(
            id=entry.id,
            order_type=entry.order_type,
            col=col,
            row=row,
            y_position=entry.y_position,
            axes=entry.axes,
            axis=entry.axis,
            abrv=entry.abrv,
            linked_block_id=entry.linked_block_id,
        )
    block_id = str(_field(entry, "id"))
    order_type = _field(entry, "orderType", "order_type") or extract_order_type_from_id(block_id)
    return OrderBlock(
        id=block_id,
        order_type=str(order_type),
        col=col,
        row=row,
        y_position=float(_field(entry, "yPosition", "y_position", default=0.0)),
        axes=tuple(_field(entry, "axes", default=()) or ()),
        axis=int(_field(entry, "axis", default=1)),
        abrv=str(_field(entry, "abrv", default="")),
        linked_block_id=_field(entry, "linkedBlockId", "linked_block_id"),
    )


def extract_blocks_from_grid(grid: Sequence[Sequence[Iterable[Any]]]) -> List[OrderBlock]:
    """Flatten grid[col][row] -> [entries] in column, row, insertion order."""
    blocks: List[OrderBlock] = []
    for col, column in enumerate(grid):
        for row, cell in enumerate(column):
            for entry in cell:
                blocks.append(block_from_grid(entry, col, row))
    return blocks


def find_linked_blocks(blocks: Sequence[OrderBlock]) -> Dict[str, OrderBlock]:
    """Map primary block id -> the block its linked_block_id points at."""
    by_id = {b.id: b for b in blocks}
    linked: Dict[str, OrderBlock] = {}
    for block in blocks:
        if block.linked_block_id:
            target = by_id.get(block.linked_block_id)
            if target is not None:
                linked[block.id] = target
    return linked


def _block_price(block: OrderBlock, current_price: float) -> float:
    return calculate_price_from_position(block.y_position, current_price, block.row, block.col)


def build_trigger(
    block: OrderBlock,
    current_price: float,
    reference: str = "last",
    symbol: str = DEFAULT_SYMBOL,
) -> Optional[OrderTrigger]:
    if not block.has_axis(AXIS_TRIGGER):
        return None
    return OrderTrigger(
        reference=reference,
        price=format_price_for_api(_block_price(block, current_price), symbol),
        price_type="static",
    )


def build_conditional(
    linked_block: Optional[OrderBlock],
    current_price: float,
    symbol: str = DEFAULT_SYMBOL,
) -> Optional[ConditionalOrder]:
    if linked_block is None:
        return None
    order_type = map_order_type(linked_block.order_type)
    if order_type not in CONDITIONAL_ORDER_TYPES:
        return None

    limit_price = limit_price_type = trigger_price = trigger_price_type = None
    if linked_block.has_axis(AXIS_LIMIT):
        limit_price = format_price_for_api(_block_price(linked_block, current_price), symbol)
        limit_price_type = "static"
    if linked_block.has_axis(AXIS_TRIGGER):
        trigger_price = format_price_for_api(_block_price(linked_block, current_price), symbol)
        trigger_price_type = "static"
    return ConditionalOrder(
        order_type=order_type,
        limit_price=limit_price,
        limit_price_type=limit_price_type,
        trigger_price=trigger_price,
        trigger_price_type=trigger_price_type,
    )


def map_block_to_order_params(
    block: OrderBlock,
    context: OrderBuildContext,
    linked_block: Optional[OrderBlock] = None,
) -> OrderParams:
    side = context.side or determine_side(block.col)
    params = OrderParams(
        order_type=map_order_type(block.order_type),
        side=side,
        order_qty=context.quantity,
        symbol=context.symbol,
        time_in_force=context.time_in_force,
        margin=context.margin,
        post_only=context.post_only,
        reduce_only=context.reduce_only,
    )
    if block.has_axis(AXIS_LIMIT):
        params.limit_price = format_price_for_api(_block_price(block, context.current_price), context.symbol)
        params.limit_price_type = "static"
    if block.has_axis(AXIS_TRIGGER):
        params.triggers = build_trigger(block, context.current_price, symbol=context.symbol)
    if linked_block is not None:
        params.conditional = build_conditional(linked_block, context.current_price, context.symbol)
    return params


def map_grid_to_orders(grid: Sequence[Sequence[Iterable[Any]]], context: OrderBuildContext) -> List[OrderParams]:
    """
    One OrderParams per primary block. Blocks that are the target of a link
    are folded into their parent's conditional and never emitted on their own.
    """
    blocks = extract_blocks_from_grid(grid)
    linked = find_linked_blocks(blocks)
    conditional_ids = {b.id for b in linked.values()}

    orders: List[OrderParams] = []
    processed: set = set()
    for block in blocks:
        if block.id in conditional_ids or block.id in processed:
            continue
        linked_block = linked.get(block.id)
        block_context = OrderBuildContext(
            symbol=context.symbol,
            current_price=context.current_price,
            quantity=context.quantity,
            side=determine_side(block.col),
            time_in_force=context.time_in_force,
            margin=context.margin,
            post_only=context.post_only,
            reduce_only=context.reduce_only,
        )
        orders.append(map_block_to_order_params(block, block_context, linked_block))
        processed.add(block.id)
        if linked_block is not None:
            processed.add(linked_block.id)
    return orders


def _quantity_ok(qty: Optional[str]) -> bool:
    if not qty:
        return False
    try:
        return float(qty) > 0
    except (TypeError, ValueError):
        return False


def validate_order(params: OrderParams) -> List[str]:
    """Return every reason the order cannot be submitted; empty when valid."""
    errors: List[str] = []
    if not params.symbol:
        errors.append("Symbol is required")
    if not _quantity_ok(params.order_qty):
        errors.append("Order quantity must be greater than 0")
    if not params.side:
        errors.append("Order side (buy/sell) is required")
    if not params.order_type:
        errors.append("Order type is required")
    if params.order_type in LIMIT_PRICE_REQUIRED and not params.limit_price:
        errors.append(f"Limit price is required for {params.order_type} orders")
    if params.order_type in TRIGGER_REQUIRED and params.triggers is None:
        errors.append(f"Trigger configuration is required for {params.order_type} orders")
    return errors


def ensure_valid(params: OrderParams) -> OrderParams:
    """Raise ValidationError carrying every reason when params are invalid."""
    reasons = validate_order(params)
    if reasons:
        raise ValidationError(reasons)
    return params


def create_order_preview(params: OrderParams) -> str:
    parts = [params.side.upper(), params.order_qty, params.symbol, f"({params.order_type})"]
    if params.limit_price:
        parts.append(f"@ {params.limit_price}")
    if params.triggers is not None and params.triggers.price:
        parts.append(f"trigger: {params.triggers.price}")
    return " ".join(parts)
