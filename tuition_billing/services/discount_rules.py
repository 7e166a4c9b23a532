"""
Discount rules, applied in a fixed order against the undiscounted base:

  EnrollmentDiscount -> AssignedDiscount -> ReferralBonus -> SiblingDiscount

Each rule is computed independently from the base amount (no compounding).
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Union

from tuition_billing.utils.money import ZERO, money, percent_of, vnd

PERCENT = "percent"
AMOUNT = "amount"


def _value_discount(base_amount: Decimal, kind: str, value: Decimal) -> Decimal:
    if kind == PERCENT:
        return percent_of(base_amount, value)
    return vnd(value)


@dataclass(frozen=True)
class EnrollmentDiscount:
    kind: str
    value: Decimal
    cadence: str
    name: str = "Enrollment Discount"

    def apply(self, base_amount: Decimal) -> Decimal:
        # yearly discounts are handled outside the monthly invoice
        if self.cadence not in ("monthly", "once"):
            return ZERO
        return _value_discount(base_amount, self.kind, self.value)


@dataclass(frozen=True)
class AssignedDiscount:
    name: str
    kind: str
    value: Decimal

    def apply(self, base_amount: Decimal) -> Decimal:
        return _value_discount(base_amount, self.kind, self.value)


@dataclass(frozen=True)
class ReferralBonus:
    kind: str
    value: Decimal
    name: str = "Referral Bonus"

    def apply(self, base_amount: Decimal) -> Decimal:
        return _value_discount(base_amount, self.kind, self.value)


@dataclass(frozen=True)
class SiblingDiscount:
    percent: Decimal
    name: str = "Sibling Discount"
    kind: str = PERCENT

    @property
    def value(self) -> Decimal:
        return self.percent

    def apply(self, base_amount: Decimal) -> Decimal:
        return percent_of(base_amount, self.percent)


DiscountRule = Union[EnrollmentDiscount, AssignedDiscount, ReferralBonus, SiblingDiscount]

RULE_ORDER = (EnrollmentDiscount, AssignedDiscount, ReferralBonus, SiblingDiscount)


@dataclass(frozen=True)
class DiscountLine:
    name: str
    type: str
    value: Decimal
    amount: Decimal
    is_sibling_winner: bool = False


def apply_rules(base_amount: Decimal, rules: list[DiscountRule]) -> tuple[list[DiscountLine], Decimal]:
    """
    Returns (lines, total_discount). Rules are sorted into RULE_ORDER
    (stable within a kind); a rule worth 0 produces no line.
    The total is NOT clamped to the base here.
    """
    ordered = sorted(rules, key=lambda r: RULE_ORDER.index(type(r)))

    lines: list[DiscountLine] = []
    total = ZERO
    for rule in ordered:
        amount = rule.apply(base_amount)
        if amount <= 0:
            continue
        lines.append(
            DiscountLine(
                name=rule.name,
                type=rule.kind,
                value=money(rule.value),
                amount=amount,
                is_sibling_winner=isinstance(rule, SiblingDiscount),
            )
        )
        total += amount
    return lines, total
