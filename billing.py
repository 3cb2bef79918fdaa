"""
Derived amounts on a bill.

A bill's `total_amount` is its pre-tax `cost` plus 18% GST, and its
`pending_amount` is what remains after `amount_paid`. The bill form keeps
both in step as the operator types; the same rules are re-applied on the
server before a bill is written.
"""
from dataclasses import dataclass, replace
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Iterable, Optional

GST_RATE = Decimal("0.18")
_CENTS = Decimal("0.01")

# Form fields whose change triggers a recomputation
COST = "cost"
TOTAL_AMOUNT = "total_amount"
AMOUNT_PAID = "amount_paid"


class BillAmountError(ValueError):
    """A bill's amounts cannot be submitted."""


def _decimal(value) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    text = str(value).strip()
    if not text:
        return None
    try:
        number = Decimal(text)
    except InvalidOperation:
        return None
    if not number.is_finite():
        return None
    return number


def parse_amount(value) -> Optional[float]:
    """Parse a form amount; None for empty, invalid or negative input."""
    number = _decimal(value)
    if number is None or number < 0:
        return None
    return float(number)


def round2(value) -> float:
    return float(Decimal(str(value)).quantize(_CENTS, rounding=ROUND_HALF_UP))


def total_with_gst(cost) -> Optional[float]:
    number = _decimal(cost)
    if number is None or number < 0:
        return None
    return float((number * (1 + GST_RATE)).quantize(_CENTS, rounding=ROUND_HALF_UP))


def pending_balance(total_amount, amount_paid) -> Optional[float]:
    """total - paid, unclamped. Falls back to the total when nothing valid was paid."""
    total = _decimal(total_amount)
    if total is None or total < 0:
        return None
    paid = _decimal(amount_paid)
    if paid is None or paid < 0:
        return round2(total)
    return float((total - paid).quantize(_CENTS, rounding=ROUND_HALF_UP))


def _fmt(value: Optional[float]) -> str:
    return "" if value is None else f"{value:.2f}"


@dataclass(frozen=True)
class BillAmounts:
    """Snapshot of the amount fields of a bill form, as typed."""
    cost: str = ""
    amount_paid: str = ""
    total_amount: str = ""
    pending_amount: str = ""


def derive_amounts(form: BillAmounts, changed: str) -> BillAmounts:
    """Return the form as it reads after `changed` was edited.

    Editing cost always overwrites total_amount, including a value the
    operator typed into total_amount directly.
    """
    if changed == COST:
        form = replace(form, total_amount=_fmt(total_with_gst(form.cost)))
    elif changed not in (TOTAL_AMOUNT, AMOUNT_PAID):
        return form
    return replace(form, pending_amount=_fmt(pending_balance(form.total_amount, form.amount_paid)))


def check_submittable(form: BillAmounts) -> None:
    for field in (TOTAL_AMOUNT, "pending_amount"):
        number = _decimal(getattr(form, field))
        if number is None:
            raise BillAmountError(f"{field} must be a number")
        if number < 0:
            raise BillAmountError(f"{field} cannot be negative")


def apply_bill_amounts(document: dict, changed_fields: Iterable[str], new: bool = False) -> dict:
    """Recompute the derived fields of a bill document about to be written.

    `changed_fields` names the fields the request actually supplied; the
    document itself is the merged state. A new bill always gets its pending
    amount computed. Raises BillAmountError when the resulting amounts
    cannot be stored.
    """
    changed = set(changed_fields)
    doc = dict(document)
    if COST in changed:
        total = total_with_gst(doc.get(COST))
        doc[TOTAL_AMOUNT] = total if total is not None else 0
    if new or changed & {COST, TOTAL_AMOUNT, AMOUNT_PAID}:
        pending = pending_balance(doc.get(TOTAL_AMOUNT), doc.get(AMOUNT_PAID))
        doc["pending_amount"] = pending if pending is not None else 0

    check_submittable(
        BillAmounts(
            total_amount=str(doc.get(TOTAL_AMOUNT, "")),
            pending_amount=str(doc.get("pending_amount", "")),
        )
    )
    return doc
