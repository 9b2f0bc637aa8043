# backend/ttofin/services/allocations.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ..models import BalanceTransaction, Income, ManualBalanceAllocation
from . import ledger
from .calculator import ZERO, round_money, to_decimal
from .errors import NotFoundError, ValidationError
from .persons import Person, load_person, person_columns
from .projects import get_project, is_representative, representative_shares

log = logging.getLogger(__name__)

# Bu kayıtların tersi kendi akışlarından yapılır (ödeme reddi vb.)
LOCKED_REFERENCES = (ledger.REF_PAYMENT_INSTRUCTION, ledger.REF_INCOME)


@dataclass
class RepresentativeAllocation:
    person: Person
    full_name: str
    is_leader: bool
    share_percentage: Decimal
    allocated_amount: Decimal
    available_amount: Decimal
    debt_amount: Decimal
    reserved_amount: Decimal


@dataclass
class AllocationSummary:
    project_id: int
    total_distributable: Decimal
    total_allocated: Decimal
    remaining_allocatable: Decimal
    representatives: List[RepresentativeAllocation] = field(default_factory=list)


def _total_distributable(db: Session, project_id: int) -> Decimal:
    total = db.execute(
        select(func.coalesce(func.sum(Income.distributable_amount), 0)).where(Income.project_id == project_id)
    ).scalar_one()
    return round_money(to_decimal(total))


def _total_allocated(db: Session, project_id: int, person: Optional[Person] = None) -> Decimal:
    stmt = select(func.coalesce(func.sum(ManualBalanceAllocation.amount), 0)).where(
        ManualBalanceAllocation.project_id == project_id
    )
    if person is not None:
        for col, value in person_columns(person).items():
            stmt = stmt.where(getattr(ManualBalanceAllocation, col) == value)
    return round_money(to_decimal(db.execute(stmt).scalar_one()))


def create_manual_allocation(
    db: Session,
    *,
    project_id: int,
    person: Person,
    amount: Any,
    notes: Optional[str] = None,
    created_by: Optional[int] = None,
    max_retries: int = ledger.DEFAULT_MAX_RETRIES,
    lock_timeout: Optional[float] = None,
) -> ManualBalanceAllocation:
    """
    Proje temsilcisinin bakiyesine elle tutar ekler (eksi tutar düşer).
    Kayıt ve 'adjustment' defter satırı aynı transaction içinde yazılır.
    """
    amt = round_money(to_decimal(amount, "amount"))
    if amt == ZERO:
        raise ValidationError("amount cannot be zero")
    project = get_project(db, project_id)
    load_person(db, person)
    if not is_representative(project, person):
        raise ValidationError(f"{person.kind} {person.id} is not a representative of project {project.code}")

    def _op() -> ManualBalanceAllocation:
        # Proje toplamı dağıtılabilir tutarı aşamaz
        ledger.lock_key(db, f"manual_allocation:{project.id}")
        if amt > ZERO:
            distributable = _total_distributable(db, project.id)
            allocated = _total_allocated(db, project.id)
            if allocated + amt > distributable:
                raise ValidationError(
                    f"Manual allocations ({allocated + amt}) would exceed the project's "
                    f"distributable total ({distributable})",
                    code="allocation_exceeds_distributable",
                )

        alloc = ManualBalanceAllocation(
            project_id=project.id,
            amount=amt,
            notes=notes,
            created_by=created_by,
            created_at=datetime.utcnow(),
            **person_columns(person),
        )
        db.add(alloc)
        db.flush()

        desc = f"Manuel bakiye dağıtımı: {project.code} - {project.name}"
        if notes:
            desc = f"{desc} ({notes})"
        ledger.post_transaction(
            db,
            ledger.BalanceKey(person, project.id),
            ledger.TX_ADJUSTMENT,
            amt,
            reference=ledger.Reference(ledger.REF_MANUAL_ALLOCATION, alloc.id),
            description=desc,
            created_by=created_by,
        )
        return alloc

    alloc = ledger.atomic(db, _op, max_retries=max_retries, lock_timeout=lock_timeout)
    db.refresh(alloc)
    log.info("manual allocation id=%s project=%s %s:%s amount=%s", alloc.id, project.code, person.kind, person.id, amt)
    return alloc


def record_debt(
    db: Session,
    *,
    person: Person,
    amount: Any,
    description: str,
    project_id: Optional[int] = None,
    created_by: Optional[int] = None,
    max_retries: int = ledger.DEFAULT_MAX_RETRIES,
    lock_timeout: Optional[float] = None,
) -> BalanceTransaction:
    """Borç kaydı; available yetmezse kalan kısım debt_amount'a yazılır."""
    if not (description or "").strip():
        raise ValidationError("description is required")
    load_person(db, person)
    if project_id is not None:
        get_project(db, project_id)

    def _op() -> BalanceTransaction:
        return ledger.post_transaction(
            db,
            ledger.BalanceKey(person, project_id),
            ledger.TX_DEBT,
            amount,
            description=description,
            created_by=created_by,
        )

    tx = ledger.atomic(db, _op, max_retries=max_retries, lock_timeout=lock_timeout)
    db.refresh(tx)
    return tx


def reverse(
    db: Session,
    transaction_id: int,
    *,
    description: str,
    created_by: Optional[int] = None,
    max_retries: int = ledger.DEFAULT_MAX_RETRIES,
    lock_timeout: Optional[float] = None,
) -> BalanceTransaction:
    """Tek başına ters kayıt (API'den çağrılır)."""
    original = db.get(BalanceTransaction, transaction_id)
    if original is None:
        raise NotFoundError(f"Balance transaction {transaction_id} not found")
    if original.reference_type in LOCKED_REFERENCES:
        # Ödeme kaydı change_payment_status(..., "rejected") ile geri alınır
        raise ValidationError(
            f"Balance transaction {transaction_id} belongs to {original.reference_type} "
            f"{original.reference_id} and cannot be reversed directly",
            code="reversal_not_allowed",
        )
    tx = ledger.atomic(
        db,
        lambda: ledger.reverse_transaction(db, transaction_id, description=description, created_by=created_by),
        max_retries=max_retries,
        lock_timeout=lock_timeout,
    )
    db.refresh(tx)
    return tx


def allocation_summary(db: Session, project_id: int) -> AllocationSummary:
    """Projedeki manuel dağıtımların temsilci bazında özeti ve güncel bakiyeler."""
    project = get_project(db, project_id)
    distributable = _total_distributable(db, project.id)
    allocated = _total_allocated(db, project.id)

    summary = AllocationSummary(
        project_id=project.id,
        total_distributable=distributable,
        total_allocated=allocated,
        remaining_allocatable=round_money(distributable - allocated),
    )
    for share in representative_shares(project):
        view = ledger.get_balance(db, share.person, project.id)
        summary.representatives.append(
            RepresentativeAllocation(
                person=share.person,
                full_name=load_person(db, share.person).full_name,
                is_leader=share.is_leader,
                share_percentage=share.share_percentage,
                allocated_amount=_total_allocated(db, project.id, share.person),
                available_amount=view.available_amount,
                debt_amount=view.debt_amount,
                reserved_amount=view.reserved_amount,
            )
        )
    return summary
