# backend/tests/test_payments.py
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from conftest import make_personnel, make_project, make_user
from ttofin.models import (
    BalanceTransaction,
    InstructionSequence,
    PaymentInstruction,
    PaymentInstructionItem,
)
from ttofin.services import allocations as allocation_service
from ttofin.services import incomes as income_service
from ttofin.services import ledger
from ttofin.services import payments as payment_service
from ttofin.services import projects as project_service
from ttofin.services.errors import (
    InsufficientBalanceError,
    MissingIBANError,
    NotFoundError,
    PaymentError,
    ValidationError,
)
from ttofin.services.payments import PaymentItemInput
from ttofin.services.persons import PersonnelRef, UserRef

D = Decimal
TODAY = date(2026, 6, 15)


def _count(db, model):
    return db.execute(select(func.count()).select_from(model)).scalar_one()


def _create(db, funded, *amounts, recipient=None, **kwargs):
    recipient = recipient or UserRef(funded["leader"].id)
    items = [PaymentItemInput(amount=a) for a in amounts]
    kwargs.setdefault("today", TODAY)
    return payment_service.create_payment_instruction(db, recipient, funded["project"].id, items, **kwargs)


def _balance(db, funded, who="leader"):
    return ledger.get_balance(db, UserRef(funded[who].id), funded["project"].id)


def test_create_reserves_balance(db, funded):
    instr = _create(db, funded, "1500", "500", notes="Mart hakedişi", created_by=funded["admin"].id)

    assert instr.status == payment_service.STATUS_PENDING
    assert instr.instruction_number == "PI-2026-000001"
    assert instr.total_amount == D("2000.00")
    assert len(instr.items) == 2

    view = _balance(db, funded)
    assert view.available_amount == D("52000.00")
    assert view.reserved_amount == D("2000.00")

    posting = payment_service.payment_posting(db, instr.id)
    assert posting.type == ledger.TX_PAYMENT
    assert posting.amount == D("-2000.00")
    assert posting.reference_type == ledger.REF_PAYMENT_INSTRUCTION


def test_instruction_numbers_are_sequential_per_year(db, funded):
    first = _create(db, funded, "10")
    second = _create(db, funded, "10")
    next_year = _create(db, funded, "10", today=date(2027, 1, 2))
    assert first.instruction_number == "PI-2026-000001"
    assert second.instruction_number == "PI-2026-000002"
    assert next_year.instruction_number == "PI-2027-000001"


def test_insufficient_balance_persists_nothing(db, funded):
    with pytest.raises(InsufficientBalanceError):
        _create(db, funded, "50000", "4000.01")

    assert _count(db, PaymentInstruction) == 0
    assert _count(db, PaymentInstructionItem) == 0
    assert _count(db, InstructionSequence) == 0
    assert _balance(db, funded).available_amount == D("54000.00")

    # Numara boşa harcanmadı
    assert _create(db, funded, "54000").instruction_number == "PI-2026-000001"


def test_failure_between_insert_and_posting_rolls_back(db, funded, monkeypatch):
    def _boom(*args, **kwargs):
        raise RuntimeError("ledger unavailable")

    monkeypatch.setattr(ledger, "post_transaction", _boom)
    with pytest.raises(RuntimeError):
        _create(db, funded, "1000")

    assert _count(db, PaymentInstruction) == 0
    assert _count(db, PaymentInstructionItem) == 0
    payments = db.execute(
        select(func.count(BalanceTransaction.id)).where(BalanceTransaction.type == ledger.TX_PAYMENT)
    ).scalar_one()
    assert payments == 0
    assert _balance(db, funded).available_amount == D("54000.00")


def test_missing_iban_is_rejected_before_any_mutation(db, funded):
    no_iban = make_user(db, "noiban@uni.edu", iban=None)
    with pytest.raises(MissingIBANError):
        _create(db, funded, "10", recipient=UserRef(no_iban.id))
    assert _count(db, PaymentInstruction) == 0
    assert _count(db, InstructionSequence) == 0


def test_blank_iban_counts_as_missing(db, funded):
    blank = make_user(db, "blank@uni.edu", iban="   ")
    with pytest.raises(MissingIBANError) as exc:
        _create(db, funded, "10", recipient=UserRef(blank.id))
    assert exc.value.code == "missing_iban"


def test_inactive_or_unknown_recipient(db, funded):
    gone = make_user(db, "gone@uni.edu", is_active=False)
    with pytest.raises(PaymentError):
        _create(db, funded, "10", recipient=UserRef(gone.id))
    with pytest.raises(NotFoundError):
        _create(db, funded, "10", recipient=UserRef(9999))
    with pytest.raises(NotFoundError):
        _create(db, funded, "10", recipient=PersonnelRef(9999))


@pytest.mark.parametrize("amounts", [(), ("0",), ("10", "-1"), ("abc",)])
def test_item_validation(db, funded, amounts):
    with pytest.raises(ValidationError):
        _create(db, funded, *amounts)
    assert _count(db, PaymentInstruction) == 0


def test_unknown_project(db, funded):
    with pytest.raises(NotFoundError):
        payment_service.create_payment_instruction(
            db, UserRef(funded["leader"].id), 999, [PaymentItemInput(amount="10")], today=TODAY
        )


def test_items_linked_to_distributions(db, funded):
    dists = {d.user_id: d for d in funded["income"].distributions}
    leader_dist = dists[funded["leader"].id]
    researcher_dist = dists[funded["researcher"].id]
    leader = UserRef(funded["leader"].id)
    project_id = funded["project"].id

    instr = payment_service.create_payment_instruction(
        db, leader, project_id,
        [PaymentItemInput(amount="54000", income_distribution_id=leader_dist.id, description="Gelir payı")],
        today=TODAY,
    )
    assert instr.items[0].income_distribution_id == leader_dist.id

    with pytest.raises(ValidationError):
        payment_service.create_payment_instruction(
            db, leader, project_id,
            [PaymentItemInput(amount="54000.01", income_distribution_id=leader_dist.id)], today=TODAY,
        )
    with pytest.raises(ValidationError):
        payment_service.create_payment_instruction(
            db, leader, project_id,
            [PaymentItemInput(amount="1", income_distribution_id=researcher_dist.id)], today=TODAY,
        )


# ---------------------------
# Status lifecycle
# ---------------------------
def test_rejection_restores_available(db, funded):
    instr = _create(db, funded, "2000")
    payment_tx = payment_service.payment_posting(db, instr.id)

    rejected = payment_service.change_payment_status(
        db, instr.id, payment_service.STATUS_REJECTED, notes="IBAN hatalı", actor_id=funded["admin"].id
    )
    assert rejected.status == payment_service.STATUS_REJECTED
    assert rejected.rejected_at is not None
    assert rejected.notes == "IBAN hatalı"

    view = _balance(db, funded)
    assert view.available_amount == D("54000.00")
    assert view.reserved_amount == D("0.00")

    reversal = db.execute(
        select(BalanceTransaction).where(
            BalanceTransaction.reference_type == ledger.REF_REVERSAL,
            BalanceTransaction.reference_id == payment_tx.id,
        )
    ).scalar_one()
    assert reversal.type == ledger.TX_ADJUSTMENT
    assert reversal.amount == D("2000.00")
    assert reversal.created_by == funded["admin"].id


def test_approved_instruction_can_still_be_rejected(db, funded):
    instr = _create(db, funded, "300")
    payment_service.change_payment_status(db, instr.id, payment_service.STATUS_APPROVED)
    payment_service.change_payment_status(db, instr.id, payment_service.STATUS_REJECTED)
    assert _balance(db, funded).available_amount == D("54000.00")


def test_full_lifecycle_releases_reservation(db, funded):
    instr = _create(db, funded, "2000")
    approved = payment_service.change_payment_status(db, instr.id, payment_service.STATUS_APPROVED)
    assert approved.approved_at is not None
    payment_service.change_payment_status(db, instr.id, payment_service.STATUS_PROCESSING)
    done = payment_service.change_payment_status(db, instr.id, payment_service.STATUS_COMPLETED)
    assert done.status == payment_service.STATUS_COMPLETED
    assert done.completed_at is not None

    view = _balance(db, funded)
    assert view.available_amount == D("52000.00")
    assert view.reserved_amount == D("0.00")

    bal_id = payment_service.payment_posting(db, instr.id).balance_id
    assert ledger.check_balance_integrity(db, bal_id) == []


@pytest.mark.parametrize(
    "path, bad",
    [
        ([], "completed"),
        ([], "processing"),
        (["approved"], "completed"),
        (["approved", "processing"], "rejected"),
        (["approved", "processing", "completed"], "rejected"),
        (["rejected"], "pending"),
        (["rejected"], "approved"),
        ([], "paid"),
    ],
)
def test_invalid_transitions(db, funded, path, bad):
    instr = _create(db, funded, "100")
    for step in path:
        payment_service.change_payment_status(db, instr.id, step)
    with pytest.raises(ValidationError):
        payment_service.change_payment_status(db, instr.id, bad)


def test_status_change_on_unknown_instruction(db, funded):
    with pytest.raises(NotFoundError):
        payment_service.change_payment_status(db, 404, payment_service.STATUS_APPROVED)


# ---------------------------
# Self-service request
# ---------------------------
def test_request_payment_for_representative(db, funded):
    researcher = UserRef(funded["researcher"].id)
    instr = payment_service.request_payment(db, researcher, funded["project"].id, "1000", notes="avans", today=TODAY)
    assert instr.user_id == researcher.id
    assert instr.created_by == researcher.id
    assert instr.total_amount == D("1000.00")
    assert _balance(db, funded, "researcher").available_amount == D("35000.00")


def test_request_payment_requires_membership(db, funded):
    outsider = make_user(db, "outsider@uni.edu")
    with pytest.raises(ValidationError):
        payment_service.request_payment(db, UserRef(outsider.id), funded["project"].id, "10", today=TODAY)


def test_personnel_recipient(db):
    leader = make_user(db, "pl@uni.edu")
    bursiyer = make_personnel(db, "Bursiyer İki")
    project = make_project(
        db, "PERS-PAY",
        [(UserRef(leader.id), 50, project_service.ROLE_LEADER),
         (PersonnelRef(bursiyer.id), 50, project_service.ROLE_RESEARCHER)],
        company_rate=0, vat_rate=0,
    )
    income_service.create_income(db, project_id=project.id, gross_amount="800", income_date=TODAY)
    instr = payment_service.create_payment_instruction(
        db, PersonnelRef(bursiyer.id), project.id, [PaymentItemInput(amount="400")], today=TODAY
    )
    assert instr.personnel_id == bursiyer.id
    assert instr.user_id is None
    assert ledger.get_balance(db, PersonnelRef(bursiyer.id), project.id).available_amount == D("0.00")


# ---------------------------
# Outstanding debt
# ---------------------------
def test_outstanding_debt_blocks_new_instructions(db, funded):
    leader = UserRef(funded["leader"].id)
    # Projesiz borç: boş genel bakiyeden karşılanamaz, tamamı debt_amount'a yazılır
    allocation_service.record_debt(db, person=leader, amount="10000", description="avans iadesi")
    assert ledger.get_balance(db, leader).debt_amount == D("10000.00")

    with pytest.raises(PaymentError) as exc:
        _create(db, funded, "1000")
    assert exc.value.code == "outstanding_debt"
    assert _count(db, PaymentInstruction) == 0
    assert _count(db, InstructionSequence) == 0
    assert _balance(db, funded).available_amount == D("54000.00")

    with pytest.raises(PaymentError):
        payment_service.request_payment(db, leader, funded["project"].id, "10", today=TODAY)

    # Borcu olmayan temsilci etkilenmez
    instr = _create(db, funded, "1000", recipient=UserRef(funded["researcher"].id))
    assert instr.status == payment_service.STATUS_PENDING


def test_debt_covered_by_available_does_not_block(db, funded):
    leader = UserRef(funded["leader"].id)
    allocation_service.record_debt(
        db, person=leader, project_id=funded["project"].id, amount="4000", description="kesinti"
    )
    assert _balance(db, funded).debt_amount == D("0.00")
    assert _create(db, funded, "50000").total_amount == D("50000.00")
