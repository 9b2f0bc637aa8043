# backend/tests/test_allocations.py
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from conftest import make_project, make_user
from ttofin.models import BalanceTransaction, ManualBalanceAllocation
from ttofin.services import allocations as allocation_service
from ttofin.services import incomes as income_service
from ttofin.services import ledger
from ttofin.services import payments as payment_service
from ttofin.services import projects as project_service
from ttofin.services.errors import ValidationError
from ttofin.services.payments import PaymentItemInput
from ttofin.services.persons import UserRef

D = Decimal
TODAY = date(2026, 6, 15)


def _balance(db, funded, who="leader"):
    return ledger.get_balance(db, UserRef(funded[who].id), funded["project"].id)


def _reversal_count(db):
    return db.execute(
        select(func.count(BalanceTransaction.id)).where(BalanceTransaction.reference_type == ledger.REF_REVERSAL)
    ).scalar_one()


# ---------------------------
# Direct reversals
# ---------------------------
def test_payment_posting_cannot_be_reversed_directly(db, funded):
    leader = UserRef(funded["leader"].id)
    instr = payment_service.create_payment_instruction(
        db, leader, funded["project"].id, [PaymentItemInput(amount="2000")], today=TODAY
    )
    posting = payment_service.payment_posting(db, instr.id)

    with pytest.raises(ValidationError) as exc:
        allocation_service.reverse(db, posting.id, description="elle iptal")
    assert exc.value.code == "reversal_not_allowed"
    assert _reversal_count(db) == 0

    view = _balance(db, funded)
    assert view.available_amount == D("52000.00")
    assert view.reserved_amount == D("2000.00")

    # Talimat kendi akışıyla hâlâ reddedilebilir
    rejected = payment_service.change_payment_status(db, instr.id, payment_service.STATUS_REJECTED)
    assert rejected.status == payment_service.STATUS_REJECTED
    assert _balance(db, funded).available_amount == D("54000.00")


def test_reservation_release_cannot_be_reversed_directly(db, funded):
    instr = payment_service.create_payment_instruction(
        db, UserRef(funded["leader"].id), funded["project"].id, [PaymentItemInput(amount="500")], today=TODAY
    )
    for step in ("approved", "processing", "completed"):
        payment_service.change_payment_status(db, instr.id, step)
    release = db.execute(
        select(BalanceTransaction).where(
            BalanceTransaction.type == ledger.TX_ADJUSTMENT,
            BalanceTransaction.reference_type == ledger.REF_PAYMENT_INSTRUCTION,
            BalanceTransaction.reference_id == instr.id,
        )
    ).scalar_one()

    with pytest.raises(ValidationError):
        allocation_service.reverse(db, release.id, description="geri al")
    assert _balance(db, funded).reserved_amount == D("0.00")


def test_income_posting_cannot_be_reversed_directly(db, funded):
    income = funded["income"]
    posting = db.execute(
        select(BalanceTransaction).where(
            BalanceTransaction.reference_type == ledger.REF_INCOME,
            BalanceTransaction.reference_id == income.id,
        )
    ).scalars().first()

    with pytest.raises(ValidationError):
        allocation_service.reverse(db, posting.id, description="gelir iptali")
    assert _reversal_count(db) == 0
    assert _balance(db, funded).available_amount == D("54000.00")
    assert _balance(db, funded, "researcher").available_amount == D("36000.00")


def test_manual_allocation_and_debt_can_be_reversed(db, funded):
    leader = UserRef(funded["leader"].id)
    alloc = allocation_service.create_manual_allocation(
        db, project_id=funded["project"].id, person=leader, amount="1000", notes="prim"
    )
    alloc_tx = db.execute(
        select(BalanceTransaction).where(
            BalanceTransaction.reference_type == ledger.REF_MANUAL_ALLOCATION,
            BalanceTransaction.reference_id == alloc.id,
        )
    ).scalar_one()
    allocation_service.reverse(db, alloc_tx.id, description="hatalı dağıtım")
    assert _balance(db, funded).available_amount == D("54000.00")

    debt = allocation_service.record_debt(
        db, person=leader, project_id=funded["project"].id, amount="300", description="avans"
    )
    rev = allocation_service.reverse(db, debt.id, description="yanlış borç")
    assert rev.amount == D("300.00")
    assert _balance(db, funded).available_amount == D("54000.00")


# ---------------------------
# Manual allocation limit
# ---------------------------
def test_manual_allocation_cannot_exceed_distributable(db, funded):
    project_id = funded["project"].id
    leader = UserRef(funded["leader"].id)
    researcher = UserRef(funded["researcher"].id)

    with pytest.raises(ValidationError) as exc:
        allocation_service.create_manual_allocation(db, project_id=project_id, person=leader, amount="5000000")
    assert exc.value.code == "allocation_exceeds_distributable"
    assert db.execute(select(func.count(ManualBalanceAllocation.id))).scalar_one() == 0
    assert _balance(db, funded).available_amount == D("54000.00")

    # Sınır proje toplamıdır (90000.00)
    allocation_service.create_manual_allocation(db, project_id=project_id, person=leader, amount="60000")
    allocation_service.create_manual_allocation(db, project_id=project_id, person=researcher, amount="30000")
    with pytest.raises(ValidationError):
        allocation_service.create_manual_allocation(db, project_id=project_id, person=researcher, amount="0.01")

    # Eksi tutar her zaman kabul edilir ve limiti geri açar
    allocation_service.create_manual_allocation(db, project_id=project_id, person=leader, amount="-100")
    allocation_service.create_manual_allocation(db, project_id=project_id, person=researcher, amount="100")


def test_manual_allocation_needs_distributable_income(db):
    leader = make_user(db, "nodist@uni.edu")
    project = make_project(db, "EMPTY", [(UserRef(leader.id), 100, project_service.ROLE_LEADER)])
    with pytest.raises(ValidationError):
        allocation_service.create_manual_allocation(db, project_id=project.id, person=UserRef(leader.id), amount="1")

    income_service.create_income(db, project_id=project.id, gross_amount="118", income_date=TODAY)
    alloc = allocation_service.create_manual_allocation(
        db, project_id=project.id, person=UserRef(leader.id), amount="90"
    )
    assert alloc.amount == D("90.00")


def test_allocation_summary(db, funded):
    project_id = funded["project"].id
    leader = UserRef(funded["leader"].id)
    allocation_service.create_manual_allocation(db, project_id=project_id, person=leader, amount="1500")
    allocation_service.create_manual_allocation(db, project_id=project_id, person=leader, amount="-500")

    summary = allocation_service.allocation_summary(db, project_id)
    assert summary.total_distributable == D("90000.00")
    assert summary.total_allocated == D("1000.00")
    assert summary.remaining_allocatable == D("89000.00")

    reps = {r.person: r for r in summary.representatives}
    assert reps[leader].is_leader
    assert reps[leader].allocated_amount == D("1000.00")
    assert reps[leader].available_amount == D("55000.00")
    researcher = reps[UserRef(funded["researcher"].id)]
    assert researcher.allocated_amount == D("0.00")
    assert researcher.available_amount == D("36000.00")
    assert researcher.full_name == "Researcher"
