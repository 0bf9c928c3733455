import math
from typing import Dict, Iterable, List


def safe_float(value, default=0.0):
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return default
    if math.isfinite(numeric):
        return numeric
    return default


def safe_positive_int(value, default=0):
    try:
        numeric = int(float(value))
    except (TypeError, ValueError):
        return default
    return max(default, numeric)


def round_money(value) -> float:
    return round(safe_float(value, 0.0), 2)


def line_total(price, quantity) -> float:
    return round_money(safe_float(price, 0.0) * safe_positive_int(quantity, 0))


def calculate_totals(items: Iterable[Dict]) -> Dict[str, float]:
    """Subtotal and item count for order or cart lines.

    The order total is always the sum of its line totals.
    """
    subtotal = 0.0
    total_items = 0
    for item in items:
        if not isinstance(item, dict):
            continue
        quantity = safe_positive_int(item.get("quantity"), 0)
        subtotal += line_total(item.get("price"), quantity)
        total_items += quantity
    subtotal = round_money(subtotal)
    return {
        "subtotal": subtotal,
        "total_items": total_items,
        "total": subtotal,
    }


def to_minor_units(amount) -> int:
    """Convert a decimal amount (12.34) to the processor's integer cents (1234)."""
    return int(round(safe_float(amount, 0.0) * 100))


def from_minor_units(amount) -> float:
    return round_money(safe_positive_int(amount, 0) / 100)


def merge_line_quantities(items: Iterable[Dict]) -> List[Dict]:
    """Collapse duplicate product lines, keeping first-seen order."""
    merged: Dict[str, Dict] = {}
    for item in items:
        product_id = str(item.get("product_id") or "")
        if not product_id:
            continue
        if product_id in merged:
            merged[product_id]["quantity"] += safe_positive_int(item.get("quantity"), 0)
        else:
            merged[product_id] = {**item, "quantity": safe_positive_int(item.get("quantity"), 0)}
    return list(merged.values())
