# backend/ttofin/services/projects.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..models import Income, Project, ProjectRepresentative
from .allocator import ShareInput
from .calculator import HUNDRED, ZERO, round_money, to_decimal
from .errors import NotFoundError, ValidationError
from .persons import Person, load_person, person_columns, person_of

log = logging.getLogger(__name__)

ROLE_LEADER = "project_leader"
ROLE_RESEARCHER = "researcher"
PROJECT_STATUSES = ("active", "completed", "cancelled")


@dataclass(frozen=True)
class RepresentativeInput:
    person: Person
    share_percentage: Any
    role: str = ROLE_RESEARCHER


@dataclass
class ProjectSummary:
    project_id: int
    budget: Decimal
    total_gross: Decimal
    remaining_budget: Decimal
    total_collected: Decimal
    total_outstanding: Decimal
    total_distributable: Decimal
    total_commission_due: Decimal
    total_commission_collected: Decimal


@dataclass
class OutstandingProject:
    project_id: int
    code: str
    name: str
    budget: Decimal
    invoiced: Decimal = ZERO
    collected: Decimal = ZERO
    outstanding: Decimal = ZERO
    incomes: List[Dict[str, Any]] = field(default_factory=list)


def _pct(value: Any, name: str) -> Decimal:
    d = to_decimal(value, name)
    if d < ZERO or d > HUNDRED:
        raise ValidationError(f"{name} must be between 0 and 100")
    return d


def validate_representatives(reps: Sequence[RepresentativeInput]) -> None:
    """Tam olarak bir yürütücü, tekrarsız kişiler ve toplamı 100 olan paylar."""
    if not reps:
        raise ValidationError("A project needs at least one representative")
    leaders = [r for r in reps if r.role == ROLE_LEADER]
    if len(leaders) != 1:
        raise ValidationError("Exactly one project leader is required")
    seen = set()
    total = ZERO
    for r in reps:
        if r.role not in (ROLE_LEADER, ROLE_RESEARCHER):
            raise ValidationError(f"Unknown representative role '{r.role}'")
        if r.person in seen:
            raise ValidationError(f"{r.person.kind} {r.person.id} is listed twice")
        seen.add(r.person)
        share = to_decimal(r.share_percentage, "share_percentage")
        if share <= ZERO or share > HUNDRED:
            raise ValidationError("share_percentage must be in (0, 100]")
        total += share
    if total != HUNDRED:
        raise ValidationError(f"Representative shares must sum to 100, got {total}")


def create_project(
    db: Session,
    *,
    code: str,
    name: str,
    budget: Any,
    company_rate: Any,
    vat_rate: Any = 18,
    has_withholding_tax: bool = False,
    withholding_tax_rate: Any = 0,
    representatives: Sequence[RepresentativeInput] = (),
) -> Project:
    code = (code or "").strip()
    if not code:
        raise ValidationError("code is required")
    budget_d = to_decimal(budget, "budget")
    if budget_d < ZERO:
        raise ValidationError("budget cannot be negative")
    validate_representatives(representatives)
    for r in representatives:
        load_person(db, r.person)

    if db.execute(select(Project.id).where(Project.code == code)).first():
        raise ValidationError(f"Project code '{code}' already exists")

    project = Project(
        code=code,
        name=name,
        budget=round_money(budget_d),
        company_rate=_pct(company_rate, "company_rate"),
        vat_rate=_pct(vat_rate, "vat_rate"),
        has_withholding_tax=bool(has_withholding_tax),
        withholding_tax_rate=_pct(withholding_tax_rate or 0, "withholding_tax_rate"),
        status="active",
    )
    for r in representatives:
        project.representatives.append(
            ProjectRepresentative(
                role=r.role,
                share_percentage=to_decimal(r.share_percentage),
                **person_columns(r.person),
            )
        )
    db.add(project)
    db.commit()
    db.refresh(project)
    log.info("project created id=%s code=%s reps=%d", project.id, project.code, len(representatives))
    return project


def get_project(db: Session, project_id: int) -> Project:
    project = db.get(Project, project_id)
    if project is None:
        raise NotFoundError(f"Project {project_id} not found")
    return project


def representative_shares(project: Project) -> List[ShareInput]:
    """Temsilcileri bakiye anahtarı sırasına göre ShareInput listesine çevirir."""
    reps = sorted(project.representatives, key=lambda r: (r.user_id is None, r.user_id or r.personnel_id))
    return [
        ShareInput(
            person=person_of(r),
            share_percentage=to_decimal(r.share_percentage),
            is_leader=r.role == ROLE_LEADER,
        )
        for r in reps
    ]


def is_representative(project: Project, person: Person) -> bool:
    return any(person_of(r) == person for r in project.representatives)


def project_summary(db: Session, project: Project) -> ProjectSummary:
    incomes = db.execute(select(Income).where(Income.project_id == project.id)).scalars().all()

    gross = ZERO
    collected = ZERO
    distributable = ZERO
    commission_due = ZERO
    commission_collected = ZERO
    for inc in incomes:
        g = to_decimal(inc.gross_amount)
        c = to_decimal(inc.collected_amount or 0)
        commission = to_decimal(inc.company_amount)
        gross += g
        collected += c
        distributable += to_decimal(inc.distributable_amount)
        commission_due += commission
        # Tahsilat oranında komisyon
        commission_collected += commission * c / g if g else ZERO

    budget = to_decimal(project.budget)
    return ProjectSummary(
        project_id=project.id,
        budget=round_money(budget),
        total_gross=round_money(gross),
        remaining_budget=round_money(budget - gross),
        total_collected=round_money(collected),
        total_outstanding=round_money(gross - collected),
        total_distributable=round_money(distributable),
        total_commission_due=round_money(commission_due),
        total_commission_collected=round_money(commission_collected),
    )


def outstanding_receivables(db: Session, project_id: Optional[int] = None) -> List[OutstandingProject]:
    """Tahsil edilmemiş tutarı olan gelirler, proje bazında gruplanmış (en büyük alacak önce)."""
    stmt = select(Income).order_by(Income.income_date.desc(), Income.id.desc())
    if project_id is not None:
        stmt = stmt.where(Income.project_id == project_id)

    groups: Dict[int, OutstandingProject] = {}
    for inc in db.execute(stmt).scalars().all():
        gross = to_decimal(inc.gross_amount)
        collected = to_decimal(inc.collected_amount or 0)
        outstanding = gross - collected
        if outstanding <= ZERO:
            continue
        grp = groups.get(inc.project_id)
        if grp is None:
            p = inc.project
            grp = groups[inc.project_id] = OutstandingProject(
                project_id=p.id, code=p.code, name=p.name, budget=round_money(to_decimal(p.budget))
            )
        grp.invoiced += gross
        grp.collected += collected
        grp.outstanding += outstanding
        grp.incomes.append(
            {
                "id": inc.id,
                "description": inc.description or "",
                "date": inc.income_date,
                "gross": round_money(gross),
                "collected": round_money(collected),
                "outstanding": round_money(outstanding),
            }
        )
    return sorted(groups.values(), key=lambda g: g.outstanding, reverse=True)
