"""
Pure numeric helpers for order economics.

- round_currency: half-up rounding to cents
- to_finite_number: lenient coercion of upstream numeric fields
- select_freight_cost: which shipping cost the seller actually bears
- compute_margin: contribution margin of a sale
"""
import math
import sys
from typing import Any, Optional, Tuple

# Magnitude the freight rule uses to say "no override"
NO_OVERRIDE_SENTINEL = 999.0

FULL_BASE_TYPES = frozenset({"fulfillment", "cross_docking", "xd_drop_off"})
FLEX_TYPES = frozenset({"self_service"})
DROP_OFF_TYPES = frozenset({"drop_off"})


def round_currency(value: float) -> float:
    """Round half-up to 2 decimals; -0.0 becomes 0.0."""
    rounded = math.floor((value + sys.float_info.epsilon) * 100 + 0.5) / 100
    if rounded == 0:
        return 0.0
    return rounded


def to_finite_number(value: Any) -> Optional[float]:
    """
    Coerce an int, float or numeric string to float.

    Returns None for None, booleans, empty strings, NaN, infinities and
    anything that does not parse.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
    else:
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def select_freight_cost(
    logistic_type: Optional[str],
    base_cost: Optional[float] = None,
    list_cost: Optional[float] = None,
    shipping_option_cost: Optional[float] = None,
    shipment_cost: Optional[float] = None,
    order_cost: Optional[float] = None,
) -> float:
    """
    Pick the freight cost borne by the seller for a logistic type.

    The result is negated (a cost reduces margin). First match wins:

        fulfillment / cross_docking / xd_drop_off -> base, else list
        self_service                              -> shipping option, else shipment
        drop_off                                  -> base, else list
        anything else                             -> order-level cost, else 0

    A magnitude of 999 means "no override"; callers check with
    is_no_override() and discard it.
    """
    candidate: Optional[float] = None

    if logistic_type in FULL_BASE_TYPES:
        candidate = base_cost if base_cost is not None else list_cost
    elif logistic_type in FLEX_TYPES:
        candidate = shipping_option_cost if shipping_option_cost is not None else shipment_cost
    elif logistic_type in DROP_OFF_TYPES:
        candidate = base_cost if base_cost is not None else list_cost

    if candidate is None:
        candidate = order_cost
    if candidate is None:
        return 0.0

    return round_currency(-candidate)


def is_no_override(cost: Optional[float]) -> bool:
    return cost is not None and abs(cost) == NO_OVERRIDE_SENTINEL


def compute_margin(
    total: float,
    platform_fee: Optional[float],
    freight: Optional[float],
    cogs: Optional[float],
) -> Tuple[float, bool]:
    """
    Contribution margin of a sale.

    platform_fee and freight arrive already negated. With a positive cogs the
    margin is real; otherwise it is net revenue and flagged as such.

    Returns:
        (margin, is_real_margin)
    """
    net = total + (platform_fee or 0.0) + (freight or 0.0)
    if cogs is not None and cogs > 0:
        return round_currency(net - cogs), True
    return round_currency(net), False
