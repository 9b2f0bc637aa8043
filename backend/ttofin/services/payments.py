# backend/ttofin/services/payments.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..models import (
    BalanceTransaction,
    IncomeDistribution,
    InstructionSequence,
    PaymentInstruction,
    PaymentInstructionItem,
)
from . import ledger
from .calculator import ZERO, round_money, to_decimal
from .errors import (
    ConcurrencyConflictError,
    MissingIBANError,
    NotFoundError,
    PaymentError,
    ValidationError,
)
from .persons import Person, UserRef, load_person, person_columns, person_of
from .projects import get_project, is_representative

log = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_APPROVED = "approved"
STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_REJECTED = "rejected"
STATUSES = (STATUS_PENDING, STATUS_APPROVED, STATUS_PROCESSING, STATUS_COMPLETED, STATUS_REJECTED)

# İzinli durum geçişleri
TRANSITIONS: Dict[str, Tuple[str, ...]] = {
    STATUS_PENDING: (STATUS_APPROVED, STATUS_REJECTED),
    STATUS_APPROVED: (STATUS_PROCESSING, STATUS_REJECTED),
    STATUS_PROCESSING: (STATUS_COMPLETED,),
    STATUS_COMPLETED: (),
    STATUS_REJECTED: (),
}

NUMBER_PREFIX = "PI"


@dataclass(frozen=True)
class PaymentItemInput:
    amount: Any
    description: Optional[str] = None
    income_distribution_id: Optional[int] = None


# ---------------------------
# Numbering
# ---------------------------
def format_instruction_number(year: int, seq: int) -> str:
    return f"{NUMBER_PREFIX}-{year}-{seq:06d}"


def next_instruction_number(db: Session, year: int) -> str:
    """Yıl bazlı sıradaki talimat numarası; çağıran unit of work içinde olmalı."""
    ledger.lock_key(db, f"instruction_seq:{year}")
    seq = db.execute(
        select(InstructionSequence)
        .where(InstructionSequence.year == year)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if seq is None:
        seq = InstructionSequence(year=year, last_value=0)
        db.add(seq)
        try:
            db.flush()
        except IntegrityError as exc:
            raise ConcurrencyConflictError(f"Instruction sequence {year} was created concurrently") from exc
    seq.last_value = (seq.last_value or 0) + 1
    db.flush()
    return format_instruction_number(year, seq.last_value)


# ---------------------------
# Creation
# ---------------------------
def _validate_items(
    db: Session, recipient: Person, project_id: int, items: Sequence[PaymentItemInput]
) -> List[Tuple[PaymentItemInput, Decimal]]:
    if not items:
        raise ValidationError("At least one payment item is required")
    parsed: List[Tuple[PaymentItemInput, Decimal]] = []
    for i, item in enumerate(items, start=1):
        amount = round_money(to_decimal(item.amount, "amount"))
        if amount <= ZERO:
            raise ValidationError(f"Item {i}: amount must be greater than 0")
        parsed.append((item, amount))

    for item, amount in parsed:
        if item.income_distribution_id is None:
            continue
        dist = db.get(IncomeDistribution, item.income_distribution_id)
        if dist is None or person_of(dist) != recipient or dist.income.project_id != project_id:
            raise ValidationError(
                f"Income distribution {item.income_distribution_id} not found or not accessible by recipient"
            )
        if amount > to_decimal(dist.amount):
            raise ValidationError(
                f"Payment amount cannot exceed distribution amount ({round_money(to_decimal(dist.amount))})"
            )
    return parsed


def create_payment_instruction(
    db: Session,
    recipient: Person,
    project_id: int,
    items: Sequence[PaymentItemInput],
    *,
    notes: Optional[str] = None,
    created_by: Optional[int] = None,
    today: Optional[date] = None,
    max_retries: int = ledger.DEFAULT_MAX_RETRIES,
    lock_timeout: Optional[float] = None,
) -> PaymentInstruction:
    """
    Ödeme talimatı oluşturur (pending) ve toplam tutar için 'payment' bakiye
    kaydı atar. Talimat ve defter kaydı ya birlikte yazılır ya hiç yazılmaz.
    """
    parsed = _validate_items(db, recipient, project_id, items)

    person = load_person(db, recipient)
    if not person.is_active:
        raise PaymentError(f"Cannot create payment instruction for inactive {recipient.kind}")
    if not (person.iban or "").strip():
        raise MissingIBANError(f"{recipient.kind.capitalize()} must have an IBAN to receive payments")
    project = get_project(db, project_id)

    # Borcu olan kişiye ödeme talimatı verilmez (tüm bakiyeleri üzerinden)
    debt = ledger.get_balance(db, recipient).debt_amount
    if debt > ZERO:
        raise PaymentError(
            f"{recipient.kind.capitalize()} has outstanding debt ({debt}); settle it before new payments",
            code="outstanding_debt",
        )

    total = round_money(sum((amount for _, amount in parsed), ZERO))
    year = (today or date.today()).year

    def _op() -> PaymentInstruction:
        number = next_instruction_number(db, year)
        instr = PaymentInstruction(
            instruction_number=number,
            project_id=project.id,
            total_amount=total,
            status=STATUS_PENDING,
            notes=notes,
            created_by=created_by,
            created_at=datetime.utcnow(),
            **person_columns(recipient),
        )
        for item, amount in parsed:
            instr.items.append(
                PaymentInstructionItem(
                    income_distribution_id=item.income_distribution_id,
                    amount=amount,
                    description=item.description,
                )
            )
        db.add(instr)
        try:
            db.flush()
        except IntegrityError as exc:
            raise ConcurrencyConflictError(f"Instruction number {number} is already taken") from exc

        ledger.post_transaction(
            db,
            ledger.BalanceKey(recipient, project.id),
            ledger.TX_PAYMENT,
            total,
            reference=ledger.Reference(ledger.REF_PAYMENT_INSTRUCTION, instr.id),
            description=f"Ödeme talimatı {number}",
            created_by=created_by,
        )
        return instr

    instr = ledger.atomic(db, _op, max_retries=max_retries, lock_timeout=lock_timeout)
    db.refresh(instr)
    log.info(
        "payment instruction created number=%s recipient=%s:%s project=%s total=%s",
        instr.instruction_number, recipient.kind, recipient.id, project.code, instr.total_amount,
    )
    return instr


def request_payment(
    db: Session,
    requester: UserRef,
    project_id: int,
    amount: Any,
    *,
    notes: Optional[str] = None,
    **kwargs: Any,
) -> PaymentInstruction:
    """Akademisyenin kendi bakiyesinden çekim talebi (tek manuel kalem)."""
    project = get_project(db, project_id)
    if not is_representative(project, requester):
        raise ValidationError("You are not a representative of this project")
    item = PaymentItemInput(amount=amount, description=notes or "Bakiye çekim talebi")
    return create_payment_instruction(
        db, requester, project_id, [item], notes=notes, created_by=requester.id, **kwargs
    )


# ---------------------------
# Status lifecycle
# ---------------------------
def get_payment(db: Session, instruction_id: int) -> PaymentInstruction:
    instr = db.get(PaymentInstruction, instruction_id)
    if instr is None:
        raise NotFoundError(f"Payment instruction {instruction_id} not found")
    return instr


def payment_posting(db: Session, instruction_id: int) -> Optional[BalanceTransaction]:
    return db.execute(
        select(BalanceTransaction).where(
            BalanceTransaction.type == ledger.TX_PAYMENT,
            BalanceTransaction.reference_type == ledger.REF_PAYMENT_INSTRUCTION,
            BalanceTransaction.reference_id == instruction_id,
        )
    ).scalar_one_or_none()


def _check_transition(current: str, new_status: str) -> None:
    if new_status not in STATUSES:
        raise ValidationError(f"Unknown status '{new_status}'")
    if new_status not in TRANSITIONS.get(current, ()):
        raise ValidationError(f"Cannot change status from {current} to {new_status}")


def change_payment_status(
    db: Session,
    instruction_id: int,
    new_status: str,
    *,
    notes: Optional[str] = None,
    actor_id: Optional[int] = None,
    max_retries: int = ledger.DEFAULT_MAX_RETRIES,
    lock_timeout: Optional[float] = None,
) -> PaymentInstruction:
    instr = get_payment(db, instruction_id)
    _check_transition(instr.status, new_status)

    def _op() -> PaymentInstruction:
        ledger.lock_key(db, f"payment_instruction:{instruction_id}")
        current = db.execute(
            select(PaymentInstruction)
            .where(PaymentInstruction.id == instruction_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one()
        _check_transition(current.status, new_status)

        now = datetime.utcnow()
        key = ledger.BalanceKey(person_of(current), current.project_id)
        if new_status == STATUS_APPROVED:
            current.approved_at = now
        elif new_status == STATUS_COMPLETED:
            ledger.release_reservation(
                db,
                key,
                current.total_amount,
                reference=ledger.Reference(ledger.REF_PAYMENT_INSTRUCTION, current.id),
                description=f"Ödeme talimatı {current.instruction_number} tamamlandı",
                created_by=actor_id,
            )
            current.completed_at = now
        elif new_status == STATUS_REJECTED:
            posting = payment_posting(db, current.id)
            if posting is None:
                raise PaymentError(f"No ledger posting found for instruction {current.instruction_number}")
            ledger.reverse_transaction(
                db,
                posting.id,
                description=f"Ödeme talimatı {current.instruction_number} reddedildi",
                created_by=actor_id,
            )
            current.rejected_at = now

        current.status = new_status
        current.updated_at = now
        if notes is not None:
            current.notes = notes
        return current

    result = ledger.atomic(db, _op, max_retries=max_retries, lock_timeout=lock_timeout)
    db.refresh(result)
    log.info("payment instruction %s -> %s", result.instruction_number, result.status)
    return result
