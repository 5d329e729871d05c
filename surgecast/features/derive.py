from surgecast.aggregation.aggregator import CellSnapshot


def safe_div(numerator: float, denominator: float) -> float:
    """Safe division that returns 0.0 when denominator is zero."""
    return numerator / denominator if denominator > 0 else 0.0


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def normalize(value: float, bounds: tuple[float, float]) -> float:
    """Map value from [low, high] onto [0, 1], clamping outside inputs."""
    low, high = bounds
    return clamp((value - low) / (high - low))


def derive_marketplace(snapshot: CellSnapshot) -> dict:
    """
    Compute derived marketplace signals from a cell snapshot.

    Output:
        - demand: active demand events in the window
        - supply: active supply events in the window
        - available_supply: supply events currently available
        - demand_supply_ratio: demand / available supply (supply floored at 1)
        - surge_pressure: 0-1 score indicating supply shortage
        - demand_trend: share of window demand in its recent half (0.5 = flat)
    """
    demand = snapshot.demand_count
    available = snapshot.available_supply

    # With no available supply any demand is a full shortage
    demand_supply_ratio = demand / max(available, 1)

    # If supply covers demand 3x or more, pressure is 0.
    # As supply drops toward 0, pressure approaches 1.
    target_ratio = 3.0
    supply_demand_ratio = safe_div(available, demand) if demand else target_ratio
    surge_pressure = clamp((target_ratio - supply_demand_ratio) / target_ratio)

    total = snapshot.demand_previous_half + snapshot.demand_recent_half
    demand_trend = safe_div(snapshot.demand_recent_half, total) if total else 0.5

    return {
        "demand": demand,
        "supply": snapshot.supply_count,
        "available_supply": available,
        "demand_supply_ratio": round(demand_supply_ratio, 3),
        "surge_pressure": round(surge_pressure, 3),
        "demand_trend": round(demand_trend, 3),
    }
