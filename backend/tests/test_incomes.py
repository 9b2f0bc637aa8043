# backend/tests/test_incomes.py
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from conftest import make_personnel, make_project, make_user
from ttofin.models import BalanceTransaction, Income
from ttofin.services import incomes as income_service
from ttofin.services import ledger
from ttofin.services import projects as project_service
from ttofin.services.errors import ValidationError
from ttofin.services.persons import PersonnelRef, UserRef

D = Decimal
LEADER = project_service.ROLE_LEADER
RESEARCHER = project_service.ROLE_RESEARCHER


def test_income_is_split_and_posted(db, funded):
    income = funded["income"]
    assert income.vat_amount == D("18000.00")
    assert income.net_amount == D("100000.00")
    assert income.company_amount == D("10000.00")
    assert income.distributable_amount == D("90000.00")
    assert income.collected_amount == D("0.00")

    amounts = {d.user_id: d.amount for d in income.distributions}
    assert amounts == {funded["leader"].id: D("54000.00"), funded["researcher"].id: D("36000.00")}

    project_id = funded["project"].id
    assert ledger.get_balance(db, UserRef(funded["leader"].id), project_id).available_amount == D("54000.00")
    assert ledger.get_balance(db, UserRef(funded["researcher"].id), project_id).available_amount == D("36000.00")

    postings = db.execute(
        select(BalanceTransaction).where(BalanceTransaction.reference_type == ledger.REF_INCOME)
    ).scalars().all()
    assert len(postings) == 2
    assert {p.reference_id for p in postings} == {income.id}
    assert all(p.type == ledger.TX_INCOME for p in postings)


def test_income_uses_project_withholding_and_vat_override(db):
    leader = make_user(db, "wht@uni.edu")
    project = make_project(
        db, "KAMU-1", [(UserRef(leader.id), 100, LEADER)],
        vat_rate=20, has_withholding_tax=True, withholding_tax_rate=50,
    )
    result = income_service.create_income(
        db, project_id=project.id, gross_amount="118000", vat_rate="18",
        income_date=date(2026, 5, 1), income_type="kamu",
    )
    inc = result.income
    assert inc.vat_rate == D("18")
    assert inc.withholding_tax_amount == D("9000.00")
    assert inc.paid_vat_amount == D("9000.00")
    assert inc.distributable_amount == D("98100.00")
    assert inc.income_type == "kamu"


def test_personnel_representative_gets_balance(db):
    leader = make_user(db, "lead@uni.edu")
    bursiyer = make_personnel(db, "Bursiyer Bir")
    project = make_project(
        db, "P-PERS", [(UserRef(leader.id), 75, LEADER), (PersonnelRef(bursiyer.id), 25, RESEARCHER)],
        company_rate=0, vat_rate=0,
    )
    income_service.create_income(db, project_id=project.id, gross_amount="1000", income_date=date(2026, 1, 2))
    assert ledger.get_balance(db, PersonnelRef(bursiyer.id), project.id).available_amount == D("250.00")


def test_budget_overrun_only_warns(db):
    leader = make_user(db, "budget@uni.edu")
    project = make_project(db, "SMALL", [(UserRef(leader.id), 100, LEADER)], budget=100000)

    first = income_service.create_income(db, project_id=project.id, gross_amount="60000", income_date=date(2026, 1, 1))
    assert first.budget_warning is None
    second = income_service.create_income(db, project_id=project.id, gross_amount="60000", income_date=date(2026, 2, 1))
    assert second.budget_warning is not None
    assert "exceeds project budget" in second.budget_warning
    assert db.execute(select(func.count(Income.id))).scalar_one() == 2


def test_income_validation(db, funded):
    project_id = funded["project"].id
    with pytest.raises(ValidationError):
        income_service.create_income(db, project_id=project_id, gross_amount="0", income_date=date(2026, 1, 1))
    with pytest.raises(ValidationError):
        income_service.create_income(db, project_id=project_id, gross_amount="10", income_date=None)
    with pytest.raises(ValidationError):
        income_service.create_income(
            db, project_id=project_id, gross_amount="10", income_date=date(2026, 1, 1), income_type="yabanci"
        )
    with pytest.raises(ValidationError):
        income_service.create_income(
            db, project_id=project_id, gross_amount="10", vat_rate="120", income_date=date(2026, 1, 1)
        )
    # Hiçbiri kayıt bırakmadı
    assert db.execute(select(func.count(Income.id))).scalar_one() == 1


def test_inactive_project_rejects_income(db, funded):
    project = funded["project"]
    project.status = "completed"
    db.commit()
    with pytest.raises(ValidationError):
        income_service.create_income(db, project_id=project.id, gross_amount="10", income_date=date(2026, 1, 1))


def test_collection_bounds(db, funded):
    income = funded["income"]
    updated = income_service.record_collection(db, income.id, "59000")
    assert updated.collected_amount == D("59000.00")
    assert income_service.outstanding_amount(updated) == D("59000.00")

    with pytest.raises(ValidationError):
        income_service.record_collection(db, income.id, "118000.01")
    with pytest.raises(ValidationError):
        income_service.record_collection(db, income.id, "-1")


def test_project_summary(db, funded):
    project = funded["project"]
    income_service.record_collection(db, funded["income"].id, "59000")
    summary = project_service.project_summary(db, project)
    assert summary.total_gross == D("118000.00")
    assert summary.remaining_budget == D("382000.00")
    assert summary.total_collected == D("59000.00")
    assert summary.total_outstanding == D("59000.00")
    assert summary.total_distributable == D("90000.00")
    assert summary.total_commission_due == D("10000.00")
    assert summary.total_commission_collected == D("5000.00")


def test_outstanding_receivables_grouped_by_project(db, funded):
    other_leader = make_user(db, "other@uni.edu")
    other = make_project(db, "TTO-002", [(UserRef(other_leader.id), 100, LEADER)])
    income_service.create_income(db, project_id=other.id, gross_amount="500", income_date=date(2026, 4, 1))
    paid = income_service.create_income(db, project_id=other.id, gross_amount="300", income_date=date(2026, 4, 2))
    income_service.record_collection(db, paid.income.id, "300")

    groups = project_service.outstanding_receivables(db)
    assert [g.code for g in groups] == ["TTO-001", "TTO-002"]
    assert groups[0].outstanding == D("118000.00")
    assert groups[1].outstanding == D("500.00")
    assert len(groups[1].incomes) == 1

    only_other = project_service.outstanding_receivables(db, other.id)
    assert [g.code for g in only_other] == ["TTO-002"]


@pytest.mark.parametrize(
    "reps",
    [
        [],
        [(1, 60, LEADER), (2, 30, RESEARCHER)],
        [(1, 50, LEADER), (2, 50, LEADER)],
        [(1, 50, RESEARCHER), (2, 50, RESEARCHER)],
        [(1, 50, LEADER), (1, 50, RESEARCHER)],
        [(1, 100, "owner")],
    ],
)
def test_project_representatives_validated(db, reps):
    make_user(db, "a@uni.edu")
    make_user(db, "b@uni.edu")
    with pytest.raises(ValidationError):
        make_project(db, "BAD", [(UserRef(uid), share, role) for uid, share, role in reps])


def test_duplicate_project_code(db):
    u = make_user(db, "dup@uni.edu")
    make_project(db, "DUP", [(UserRef(u.id), 100, LEADER)])
    with pytest.raises(ValidationError):
        make_project(db, "DUP", [(UserRef(u.id), 100, LEADER)])
