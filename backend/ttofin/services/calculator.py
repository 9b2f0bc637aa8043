# backend/ttofin/services/calculator.py
"""
Gelir kesinti hesabı (KDV / tevkifat / TTO komisyonu).

Brüt tutar KDV dahil kabul edilir. Ara adımlarda yuvarlama yapılmaz;
sadece sonuç tutarları 2 haneye ROUND_HALF_UP ile yuvarlanır.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

from .errors import ValidationError

HUNDRED = Decimal("100")
CENT = Decimal("0.01")
ZERO = Decimal("0")
# Numeric(18,2) kolonlarına sığan en büyük mutlak değerin bir üstü
MAX_AMOUNT = Decimal("1e16")


def to_decimal(value: Any, field: str = "value") -> Decimal:
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number")
    try:
        d = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(f"{field} must be a number")
    if not d.is_finite():
        raise ValidationError(f"{field} must be a finite number")
    if abs(d) >= MAX_AMOUNT:
        raise ValidationError(f"{field} is out of range (must be below {MAX_AMOUNT:,.0f})")
    return d


def round_money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def _pct(value: Any, field: str) -> Decimal:
    d = to_decimal(value, field)
    if d < ZERO or d > HUNDRED:
        raise ValidationError(f"{field} must be between 0 and 100")
    return d


@dataclass(frozen=True)
class IncomeAmounts:
    gross_amount: Decimal
    vat_rate: Decimal
    company_rate: Decimal
    has_withholding_tax: bool
    withholding_tax_rate: Decimal

    full_vat_amount: Decimal
    withholding_tax_amount: Decimal
    paid_vat_amount: Decimal
    net_amount: Decimal
    company_amount: Decimal
    distributable_amount: Decimal


def compute_income_amounts(
    gross_amount: Any,
    vat_rate: Any,
    company_rate: Any,
    has_withholding_tax: bool = False,
    withholding_tax_rate: Any = 0,
) -> IncomeAmounts:
    gross = to_decimal(gross_amount, "gross_amount")
    if gross <= ZERO:
        raise ValidationError("gross_amount must be greater than 0")
    vat = _pct(vat_rate, "vat_rate")
    company = _pct(company_rate, "company_rate")
    wht_rate = _pct(withholding_tax_rate if withholding_tax_rate is not None else 0, "withholding_tax_rate")

    full_vat = gross * vat / (HUNDRED + vat)
    withholding = full_vat * wht_rate / HUNDRED if has_withholding_tax else ZERO
    paid_vat = full_vat - withholding
    net = gross - paid_vat
    commission = net * company / HUNDRED
    distributable = net - commission

    return IncomeAmounts(
        gross_amount=round_money(gross),
        vat_rate=vat,
        company_rate=company,
        has_withholding_tax=bool(has_withholding_tax),
        withholding_tax_rate=wht_rate if has_withholding_tax else ZERO,
        full_vat_amount=round_money(full_vat),
        withholding_tax_amount=round_money(withholding),
        paid_vat_amount=round_money(paid_vat),
        net_amount=round_money(net),
        company_amount=round_money(commission),
        distributable_amount=round_money(distributable),
    )
