"""
Freight derivation for a marketplace order.

Given the raw order and its shipment (or None when the shipment could not be
fetched), works out which shipping cost was charged, which one the seller
bears for the logistic type, and the derived quantity/unit price.
"""
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

from ordersync.money import is_no_override, round_currency, select_freight_cost, to_finite_number

LOGISTIC_LABELS = {
    "self_service": "FLEX",
    "xd_drop_off": "Agency",
    "cross_docking": "Pickup",
    "fulfillment": "FULL",
    "drop_off": "Post Office",
}

ADJUSTMENT_SOURCES = {
    "self_service": "FLEX",
    "drop_off": "Post Office",
    "xd_drop_off": "Agency",
    "fulfillment": "FULL",
    "cross_docking": "Pickup",
}


@dataclass(frozen=True)
class FreightDerivation:
    """Per-order freight figures. Built once during enrichment."""

    logistic_type: Optional[str]
    logistic_type_source: Optional[str]  # "shipment" | "order"
    logistic_label: str
    shipping_mode: Optional[str]
    base_cost: Optional[float]
    list_cost: Optional[float]
    shipping_option_cost: Optional[float]
    shipment_cost: Optional[float]
    order_cost_fallback: Optional[float]
    charged_cost: Optional[float]
    charged_cost_source: Optional[str]  # "shipping_option" | "shipment" | "order"
    discount: Optional[float]
    total_amount: Optional[float]
    quantity: Optional[int]
    unit_price: Optional[float]
    diff_base_list: Optional[float]
    adjusted_cost: Optional[float]
    adjustment_source: Optional[str]

    @property
    def margin_freight(self) -> float:
        """
        Freight used in margin math.

        The adjusted cost when one was computed. Without a logistic type the
        catch-all branch of the freight rule applies: the order-level cost
        negated, else zero; any shipment-reported cost is ignored. With a type
        whose override was discarded, the charged cost negated.
        """
        if self.adjusted_cost is not None:
            return self.adjusted_cost
        if not self.logistic_type:
            fallback = select_freight_cost(None, order_cost=self.order_cost_fallback)
            return 0.0 if is_no_override(fallback) else fallback
        if self.charged_cost is not None:
            return round_currency(-self.charged_cost)
        return 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FreightDerivation":
        return cls(**{name: data.get(name) for name in cls.__dataclass_fields__})


def logistic_label(logistic_type: Optional[str]) -> str:
    if not logistic_type:
        return "Unknown"
    return LOGISTIC_LABELS.get(logistic_type, logistic_type)


def sum_item_quantities(items: List[Dict[str, Any]]) -> Optional[int]:
    """Sum order_items[].quantity; None when no item carries a usable quantity."""
    total = 0
    found = False
    for item in items:
        qty = to_finite_number(item.get("quantity")) if isinstance(item, dict) else None
        if qty is not None and qty > 0:
            total += int(qty)
            found = True
    return total if found else None


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def derive_freight(order: Optional[Dict[str, Any]], shipment: Optional[Dict[str, Any]]) -> FreightDerivation:
    o = _as_dict(order)
    s = _as_dict(shipment)
    order_shipping = _as_dict(o.get("shipping"))

    shipping_mode = order_shipping.get("mode") if isinstance(order_shipping.get("mode"), str) else None
    raw_type = s.get("logistic_type") if isinstance(s.get("logistic_type"), str) else None
    logistic_type = raw_type or shipping_mode
    if raw_type:
        type_source = "shipment"
    elif shipping_mode:
        type_source = "order"
    else:
        type_source = None

    option = _as_dict(s.get("shipping_option"))
    base_cost = to_finite_number(s.get("base_cost"))
    option_cost = to_finite_number(option.get("cost"))
    list_cost = to_finite_number(option.get("list_cost"))
    shipment_cost = to_finite_number(s.get("cost"))
    order_cost = to_finite_number(order_shipping.get("cost"))

    charged_cost: Optional[float] = None
    charged_source: Optional[str] = None
    if option_cost is not None:
        charged_cost, charged_source = option_cost, "shipping_option"
    elif shipment_cost is not None:
        charged_cost, charged_source = shipment_cost, "shipment"
    elif order_cost is not None:
        charged_cost, charged_source = order_cost, "order"
    if charged_cost is not None:
        charged_cost = round_currency(charged_cost)

    discount = None
    if list_cost is not None and charged_cost is not None:
        discount = round_currency(list_cost - charged_cost)

    total_amount = to_finite_number(o.get("total_amount"))
    items = o.get("order_items") if isinstance(o.get("order_items"), list) else []
    quantity = sum_item_quantities(items)
    if quantity is None:
        if items:
            quantity = len(items)
        elif total_amount is not None:
            quantity = 1

    unit_price = None
    if total_amount is not None:
        unit_price = round_currency(total_amount / quantity) if quantity else round_currency(total_amount)

    diff_base_list = None
    if base_cost is not None and list_cost is not None:
        diff_base_list = round_currency(base_cost - list_cost)

    adjusted_cost = None
    adjustment_source = None
    if logistic_type:
        candidate = select_freight_cost(
            logistic_type,
            base_cost=base_cost,
            list_cost=list_cost,
            shipping_option_cost=option_cost,
            shipment_cost=shipment_cost,
            order_cost=order_cost,
        )
        if not is_no_override(candidate):
            adjusted_cost = candidate
            adjustment_source = ADJUSTMENT_SOURCES.get(logistic_type, logistic_type)

    return FreightDerivation(
        logistic_type=logistic_type,
        logistic_type_source=type_source,
        logistic_label=logistic_label(logistic_type),
        shipping_mode=shipping_mode,
        base_cost=base_cost,
        list_cost=list_cost,
        shipping_option_cost=round_currency(option_cost) if option_cost is not None else None,
        shipment_cost=round_currency(shipment_cost) if shipment_cost is not None else None,
        order_cost_fallback=round_currency(order_cost) if order_cost is not None else None,
        charged_cost=charged_cost,
        charged_cost_source=charged_source,
        discount=discount,
        total_amount=total_amount,
        quantity=quantity,
        unit_price=unit_price,
        diff_base_list=diff_base_list,
        adjusted_cost=adjusted_cost,
        adjustment_source=adjustment_source,
    )
