"""
Built-in registry functions for risk scoring flows.

All of them read their reference values from the call context (the data an
expression is evaluated against) and fall back to neutral scores when the
inputs are missing.
"""

import asyncio
import math
from typing import Any, Optional

from flow_engine.core.errors import FunctionCallError
from flow_engine.expressions.logic import is_number
from flow_engine.expressions.registry import FunctionCallContext, FunctionRegistry

# Degrees of lat/lon delta at which distance risk saturates.
DISTANCE_SATURATION = 0.5
VELOCITY_WINDOW_SECONDS = 3600


def distance_risk(
    call: FunctionCallContext,
    user_lat: Optional[float] = None,
    user_lon: Optional[float] = None,
) -> float:
    """Risk in [0, 1] from distance to the last known location."""
    last_lat = call.ctx.get("lastKnownLat")
    last_lon = call.ctx.get("lastKnownLon")
    if not all(is_number(v) for v in (user_lat, user_lon, last_lat, last_lon)):
        return 0.5

    distance = math.hypot(user_lat - last_lat, user_lon - last_lon)
    return min(1.0, distance / DISTANCE_SATURATION)


def device_velocity(call: FunctionCallContext, current_timestamp: Optional[float] = None) -> float:
    """Score in [0, 1] from seconds elapsed since the device was last seen (ms timestamps)."""
    last_seen = call.ctx.get("lastSeenAt")
    if not is_number(current_timestamp) or not is_number(last_seen):
        return 0.0
    delta_seconds = (current_timestamp - last_seen) / 1000
    if delta_seconds <= 0:
        return 0.0
    return min(1.0, delta_seconds / VELOCITY_WINDOW_SECONDS)


async def blacklist_check(call: FunctionCallContext, user_id: Optional[str] = None) -> bool:
    if call.aborted:
        raise FunctionCallError("blacklistCheck", "aborted")
    blacklist: Any = call.ctx.get("blacklist") or []
    await asyncio.sleep(0.005)
    return (user_id or "") in blacklist


def create_default_registry(default_budget_ms: int = 50) -> FunctionRegistry:
    """Build a registry preloaded with the built-in functions."""
    registry = FunctionRegistry(default_budget_ms=default_budget_ms)
    registry.register("distanceRisk", distance_risk)
    registry.register("deviceVelocity", device_velocity)
    registry.register("blacklistCheck", blacklist_check, budget_ms=100)
    return registry
