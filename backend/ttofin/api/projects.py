# backend/ttofin/api/projects.py
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, constr
from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from ..core.config import settings
from ..models import Project
from ..services import projects as project_service
from .common import MoneyStr, PersonIn, paginate
from .deps import CurrentUser, get_db, require_permissions

router = APIRouter(prefix="/projects", tags=["projects"])


# ---------- Pydantic şemaları ----------

class RepresentativeIn(PersonIn):
    role: str = project_service.ROLE_RESEARCHER  # project_leader | researcher
    share_percentage: Decimal


class ProjectCreate(BaseModel):
    code: constr(strip_whitespace=True, min_length=1)
    name: constr(strip_whitespace=True, min_length=1)
    budget: Decimal = Decimal("0")
    company_rate: Decimal
    vat_rate: Optional[Decimal] = None  # boşsa DEFAULT_VAT_RATE
    has_withholding_tax: bool = False
    withholding_tax_rate: Decimal = Decimal("0")
    representatives: List[RepresentativeIn]


class RepresentativeOut(BaseModel):
    id: int
    user_id: Optional[int] = None
    personnel_id: Optional[int] = None
    role: str
    share_percentage: Decimal

    class Config:
        from_attributes = True


class ProjectOut(BaseModel):
    id: int
    code: str
    name: str
    budget: MoneyStr
    company_rate: Decimal
    vat_rate: Decimal
    has_withholding_tax: bool
    withholding_tax_rate: Decimal
    status: str
    created_at: Optional[datetime] = None
    representatives: List[RepresentativeOut] = []

    class Config:
        from_attributes = True


class ProjectSummaryOut(BaseModel):
    budget: MoneyStr
    total_gross: MoneyStr
    remaining_budget: MoneyStr
    total_collected: MoneyStr
    total_outstanding: MoneyStr
    total_distributable: MoneyStr
    total_commission_due: MoneyStr
    total_commission_collected: MoneyStr

    class Config:
        from_attributes = True


class ProjectDetailOut(ProjectOut):
    summary: ProjectSummaryOut


# ---------- Endpoints ----------

@router.post(
    "/",
    response_model=ProjectOut,
    status_code=status.HTTP_201_CREATED,
    summary="Register project with representatives",
)
def create_project(
    body: ProjectCreate,
    db: Session = Depends(get_db),
    current: CurrentUser = Depends(require_permissions(["projects:write"])),
):
    project = project_service.create_project(
        db,
        code=body.code,
        name=body.name,
        budget=body.budget,
        company_rate=body.company_rate,
        vat_rate=body.vat_rate if body.vat_rate is not None else settings.DEFAULT_VAT_RATE,
        has_withholding_tax=body.has_withholding_tax,
        withholding_tax_rate=body.withholding_tax_rate,
        representatives=[
            project_service.RepresentativeInput(
                person=r.to_person(), share_percentage=r.share_percentage, role=r.role
            )
            for r in body.representatives
        ],
    )
    return ProjectOut.model_validate(project)


@router.get(
    "/",
    summary="List projects (paged)",
    dependencies=[Depends(require_permissions(["projects:read"]))],
)
def list_projects(
    page: int = Query(1, ge=1),
    size: int = Query(20, ge=1, le=100),
    status_filter: Optional[str] = Query(None, alias="status"),
    q: Optional[str] = Query(None, description="code / name araması"),
    db: Session = Depends(get_db),
):
    qs = db.query(Project)
    if status_filter:
        qs = qs.filter(Project.status == status_filter)
    if q and q.strip():
        needle = q.strip().lower()
        qs = qs.filter(or_(func.lower(Project.code).contains(needle), func.lower(Project.name).contains(needle)))
    rows, meta = paginate(qs.order_by(Project.id.desc()), page, size)
    return {"meta": meta, "items": [ProjectOut.model_validate(r) for r in rows]}


@router.get(
    "/{project_id}",
    response_model=ProjectDetailOut,
    dependencies=[Depends(require_permissions(["projects:read"]))],
)
def get_project(project_id: int, db: Session = Depends(get_db)):
    project = db.get(Project, project_id)
    if not project:
        raise HTTPException(status_code=404, detail="Project not found")
    summary = project_service.project_summary(db, project)
    data = ProjectOut.model_validate(project).model_dump()
    data["summary"] = ProjectSummaryOut.model_validate(summary)
    return ProjectDetailOut.model_validate(data)
