"""
Charge reconciler - derives one canonical price from the redundant fields a
checkout carries (line items, charges breakdown, explicit totals).

Rules, applied in order:
1. items_summary from line items ("Shirt x 2, Towel x 1"), else from the
   services list, else "Services x 1".
2. discount_amount == 0 but charges_breakdown.discount > 0 -> adopt the
   breakdown discount.
3. final_amount = total_price - discount_amount.
4. final_amount is clamped at 0.
5. A booking in "completed" without completed_at gets stamped.

Reconciliation never raises on numeric input: negatives are clamped and
missing values default. It runs before every booking write, so final_amount
and discount_amount are always mutually consistent in storage.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

DEFAULT_HANDLING_FEE = 9.0
GENERIC_ITEMS_SUMMARY = "Services x 1"
FEE_FIELDS = ("tax", "service_fee", "delivery_fee", "handling_fee")


class CanonicalPricing(BaseModel):
    line_items: list[dict] = Field(default_factory=list)
    items_summary: str = GENERIC_ITEMS_SUMMARY
    charges_breakdown: dict = Field(default_factory=dict)
    total_price: float = 0.0
    discount_amount: float = 0.0
    final_amount: float = 0.0


def _money(value: Any) -> float:
    """Coerce to a non-negative amount rounded to 2 places. Garbage -> 0."""
    try:
        amount = float(value)
    except (TypeError, ValueError):
        return 0.0
    if amount != amount or amount < 0:  # NaN or negative
        return 0.0
    return round(amount, 2)


def _field(source: Any, *names: str, default: Any = None) -> Any:
    """Read the first present attribute/key out of a dict or pydantic model."""
    for name in names:
        if isinstance(source, dict):
            if source.get(name) is not None:
                return source[name]
        elif getattr(source, name, None) is not None:
            return getattr(source, name)
    return default


def normalize_line_items(line_items: Optional[Iterable[Any]]) -> list[dict]:
    """Normalize cart lines and recompute line_total = quantity * unit_price."""
    normalized = []
    for item in line_items or []:
        name = str(_field(item, "name", "service_name", default="")).strip()
        try:
            quantity = max(1, int(_field(item, "quantity", default=1)))
        except (TypeError, ValueError):
            quantity = 1
        unit_price = _money(_field(item, "unit_price", default=0))
        normalized.append({
            "name": name,
            "quantity": quantity,
            "unit_price": unit_price,
            "line_total": round(quantity * unit_price, 2),
        })
    return normalized


def build_items_summary(line_items: list[dict], services: Optional[Iterable[str]] = None) -> str:
    if line_items:
        return ", ".join(f"{item['name']} x {item['quantity']}" for item in line_items)
    services = [s for s in (services or []) if s]
    if services:
        return ", ".join(f"{service} x 1" for service in services)
    return GENERIC_ITEMS_SUMMARY


def normalize_breakdown(
    charges_breakdown: Any,
    items_subtotal: float,
    default_handling_fee: float = DEFAULT_HANDLING_FEE,
) -> dict:
    breakdown = {
        "base_price": _money(_field(charges_breakdown, "base_price", default=0)),
        "tax": _money(_field(charges_breakdown, "tax", "tax_amount", default=0)),
        "service_fee": _money(_field(charges_breakdown, "service_fee", default=0)),
        "delivery_fee": _money(_field(charges_breakdown, "delivery_fee", default=0)),
        "handling_fee": _money(
            _field(charges_breakdown, "handling_fee", default=default_handling_fee)
        ),
        "discount": _money(_field(charges_breakdown, "discount", default=0)),
    }
    referral_discount = _field(charges_breakdown, "referral_discount")
    if referral_discount is not None:
        breakdown["referral_discount"] = _money(referral_discount)
    if breakdown["base_price"] == 0 and items_subtotal > 0:
        breakdown["base_price"] = items_subtotal
    return breakdown


def reconcile(
    line_items: Optional[Iterable[Any]],
    charges_breakdown: Any = None,
    explicit_totals: Optional[dict] = None,
    services: Optional[Iterable[str]] = None,
    default_handling_fee: float = DEFAULT_HANDLING_FEE,
) -> CanonicalPricing:
    """
    Compute canonical pricing.

    Args:
        line_items: cart lines (dicts or LineItemIn models)
        charges_breakdown: itemized charges (dict or ChargesBreakdown)
        explicit_totals: caller-supplied total_price / discount_amount / final_amount
        services: plain service names, used for the summary when there are no lines
        default_handling_fee: applied when the breakdown leaves handling_fee unset

    Returns:
        CanonicalPricing with final_amount == max(0, total_price - discount_amount)
    """
    explicit_totals = explicit_totals or {}

    items = normalize_line_items(line_items)
    items_subtotal = round(sum(item["line_total"] for item in items), 2)
    breakdown = normalize_breakdown(charges_breakdown or {}, items_subtotal, default_handling_fee)

    if explicit_totals.get("total_price") is not None:
        total_price = _money(explicit_totals["total_price"])
    else:
        total_price = round(
            breakdown["base_price"] + sum(breakdown[fee] for fee in FEE_FIELDS), 2
        )

    discount_amount = _money(explicit_totals.get("discount_amount"))
    if discount_amount == 0 and breakdown["discount"] > 0:
        discount_amount = breakdown["discount"]

    final_amount = round(max(0.0, total_price - discount_amount), 2)

    supplied_final = explicit_totals.get("final_amount")
    if supplied_final is not None and _money(supplied_final) != final_amount:
        logger.warning(
            "Supplied final_amount %s disagrees with total %.2f - discount %.2f; using %.2f",
            supplied_final, total_price, discount_amount, final_amount,
        )

    return CanonicalPricing(
        line_items=items,
        items_summary=build_items_summary(items, services),
        charges_breakdown=breakdown,
        total_price=total_price,
        discount_amount=discount_amount,
        final_amount=final_amount,
    )


def apply_reconciliation(
    booking,
    now: Optional[datetime] = None,
    final_amount: Optional[float] = None,
    default_handling_fee: float = DEFAULT_HANDLING_FEE,
) -> CanonicalPricing:
    """
    Re-derive and write every canonical field on a Booking in one step.
    Call right before the booking is flushed.
    """
    pricing = reconcile(
        booking.line_items,
        booking.charges_breakdown,
        {
            "total_price": booking.total_price,
            "discount_amount": booking.discount_amount,
            "final_amount": final_amount,
        },
        services=booking.services,
        default_handling_fee=default_handling_fee,
    )

    booking.line_items = pricing.line_items
    booking.items_summary = pricing.items_summary
    booking.charges_breakdown = pricing.charges_breakdown
    booking.total_price = pricing.total_price
    booking.discount_amount = pricing.discount_amount
    booking.final_amount = pricing.final_amount

    if booking.status == "completed" and booking.completed_at is None:
        booking.completed_at = now or datetime.now(timezone.utc)

    return pricing


def add_discount(booking, amount: float, label: str = "referral_discount") -> float:
    """
    Stack an additional discount onto a booking and reconcile.
    Returns the amount actually added (never more than what is left to pay).
    """
    amount = min(_money(amount), booking.final_amount or 0.0)

    breakdown = dict(booking.charges_breakdown or {})
    breakdown[label] = round(_money(breakdown.get(label)) + amount, 2)
    breakdown["discount"] = round(_money(breakdown.get("discount")) + amount, 2)
    booking.charges_breakdown = breakdown
    booking.discount_amount = round(_money(booking.discount_amount) + amount, 2)

    apply_reconciliation(booking)
    return amount


def percentage_of(total: float, percentage: float) -> float:
    return round(_money(total) * max(0.0, min(float(percentage), 100.0)) / 100, 2)
