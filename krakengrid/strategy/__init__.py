"""
Strategy package - grid block to order mapping.
"""

from krakengrid.strategy.order_builder import (
    create_order_preview,
    ensure_valid,
    format_price_for_api,
    map_block_to_order_params,
    map_grid_to_orders,
    validate_order,
)

__all__ = [
    "create_order_preview",
    "ensure_valid",
    "format_price_for_api",
    "map_block_to_order_params",
    "map_grid_to_orders",
    "validate_order",
]
