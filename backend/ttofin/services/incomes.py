# backend/ttofin/services/incomes.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ..models import Income, IncomeDistribution
from . import ledger
from .allocator import Allocation, allocate_distribution
from .calculator import ZERO, compute_income_amounts, round_money, to_decimal
from .errors import NotFoundError, ValidationError
from .persons import person_columns
from .projects import get_project, representative_shares

log = logging.getLogger(__name__)

INCOME_TYPES = ("ozel", "kamu")


@dataclass
class IncomeResult:
    income: Income
    budget_warning: Optional[str] = None


def _budget_warning(db: Session, project, gross: Decimal) -> Optional[str]:
    existing = db.execute(
        select(func.coalesce(func.sum(Income.gross_amount), 0)).where(Income.project_id == project.id)
    ).scalar_one()
    existing = to_decimal(existing)
    budget = to_decimal(project.budget)
    if existing + gross <= budget:
        return None
    return (
        f"Income exceeds project budget. Budget: {round_money(budget)}, "
        f"existing incomes: {round_money(existing)}, new income: {round_money(gross)}"
    )


def create_income(
    db: Session,
    *,
    project_id: int,
    gross_amount: Any,
    income_date: date,
    vat_rate: Any = None,
    description: Optional[str] = None,
    is_fsmh_income: bool = False,
    income_type: str = "ozel",
    is_tto_income: bool = True,
    created_by: Optional[int] = None,
    max_retries: int = ledger.DEFAULT_MAX_RETRIES,
    lock_timeout: Optional[float] = None,
) -> IncomeResult:
    """
    Geliri kaydeder, kesintileri hesaplar, dağıtılabilir tutarı temsilcilere
    böler ve her pay için 'income' bakiye kaydı atar. Hepsi tek transaction.
    """
    if income_date is None:
        raise ValidationError("income_date is required")
    project = get_project(db, project_id)
    if project.status != "active":
        raise ValidationError("Cannot add income to inactive project")
    if income_type not in INCOME_TYPES:
        raise ValidationError(f"income_type must be one of {', '.join(INCOME_TYPES)}")

    amounts = compute_income_amounts(
        gross_amount,
        vat_rate if vat_rate is not None else project.vat_rate,
        project.company_rate,
        project.has_withholding_tax,
        project.withholding_tax_rate,
    )
    allocations: List[Allocation] = allocate_distribution(
        amounts.distributable_amount, representative_shares(project)
    )
    warning = _budget_warning(db, project, amounts.gross_amount)
    if warning:
        # Bütçe aşımı engellenmez, sadece uyarılır
        log.warning("project %s: %s", project.code, warning)

    def _op() -> Income:
        income = Income(
            project_id=project.id,
            gross_amount=amounts.gross_amount,
            vat_rate=amounts.vat_rate,
            income_date=income_date,
            description=description,
            is_fsmh_income=bool(is_fsmh_income),
            income_type=income_type,
            is_tto_income=bool(is_tto_income),
            collected_amount=ZERO,
            vat_amount=amounts.full_vat_amount,
            withholding_tax_amount=amounts.withholding_tax_amount,
            paid_vat_amount=amounts.paid_vat_amount,
            net_amount=amounts.net_amount,
            company_amount=amounts.company_amount,
            distributable_amount=amounts.distributable_amount,
            created_by=created_by,
        )
        for a in allocations:
            income.distributions.append(
                IncomeDistribution(
                    share_percentage=a.share_percentage,
                    amount=a.amount,
                    **person_columns(a.person),
                )
            )
        db.add(income)
        db.flush()

        # Kilit sırası sabit olsun diye anahtar sırasıyla
        postings = sorted(
            ((ledger.BalanceKey(a.person, project.id), a) for a in allocations if a.amount > ZERO),
            key=lambda p: str(p[0]),
        )
        for key, a in postings:
            ledger.post_transaction(
                db,
                key,
                ledger.TX_INCOME,
                a.amount,
                reference=ledger.Reference(ledger.REF_INCOME, income.id),
                description=f"Gelir dağıtımı: {project.code} (%{a.share_percentage})",
                created_by=created_by,
            )
        return income

    income = ledger.atomic(db, _op, max_retries=max_retries, lock_timeout=lock_timeout)
    db.refresh(income)
    log.info(
        "income created id=%s project=%s gross=%s distributable=%s",
        income.id, project.code, income.gross_amount, income.distributable_amount,
    )
    return IncomeResult(income=income, budget_warning=warning)


def get_income(db: Session, income_id: int) -> Income:
    income = db.get(Income, income_id)
    if income is None:
        raise NotFoundError(f"Income {income_id} not found")
    return income


def record_collection(db: Session, income_id: int, collected_amount: Any) -> Income:
    """Tahsil edilen toplam tutarı günceller (0 ≤ collected ≤ gross)."""
    income = get_income(db, income_id)
    collected = round_money(to_decimal(collected_amount, "collected_amount"))
    if collected < ZERO:
        raise ValidationError("collected_amount cannot be negative")
    if collected > to_decimal(income.gross_amount):
        raise ValidationError(
            f"collected_amount cannot exceed gross amount ({round_money(to_decimal(income.gross_amount))})"
        )
    income.collected_amount = collected
    db.commit()
    db.refresh(income)
    log.info("income %s collected=%s", income.id, collected)
    return income


def outstanding_amount(income: Income) -> Decimal:
    return round_money(to_decimal(income.gross_amount) - to_decimal(income.collected_amount or 0))
