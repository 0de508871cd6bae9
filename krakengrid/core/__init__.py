"""
Core package.

This package contains the event bus and the domain types shared by the
session and the order builder.
"""

from krakengrid.core.event_bus import Event, EventBus, EventType, Subscription
from krakengrid.core.models import (
    ChannelKind,
    ChannelState,
    ConditionalOrder,
    OrderBlock,
    OrderBuildContext,
    OrderParams,
    OrderResponse,
    OrderTrigger,
)

__all__ = [
    "Event",
    "EventBus",
    "EventType",
    "Subscription",
    "ChannelKind",
    "ChannelState",
    "ConditionalOrder",
    "OrderBlock",
    "OrderBuildContext",
    "OrderParams",
    "OrderResponse",
    "OrderTrigger",
]
