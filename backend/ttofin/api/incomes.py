# backend/ttofin/api/incomes.py
from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..core.config import settings
from ..models import Income
from ..services import incomes as income_service
from ..services import projects as project_service
from ..services.calculator import ZERO, round_money, to_decimal
from .common import MoneyStr, paginate
from .deps import CurrentUser, get_db, require_permissions

router = APIRouter(prefix="/incomes", tags=["incomes"])


# ---------- Pydantic şemaları ----------

class IncomeCreate(BaseModel):
    project_id: int
    gross_amount: Decimal
    income_date: date
    vat_rate: Optional[Decimal] = None  # boşsa projenin KDV oranı
    description: Optional[str] = None
    is_fsmh_income: bool = False
    income_type: str = "ozel"  # ozel | kamu
    is_tto_income: bool = True


class CollectionUpdate(BaseModel):
    collected_amount: Decimal


class DistributionOut(BaseModel):
    id: int
    user_id: Optional[int] = None
    personnel_id: Optional[int] = None
    share_percentage: Decimal
    amount: MoneyStr

    class Config:
        from_attributes = True


class IncomeOut(BaseModel):
    id: int
    project_id: int
    gross_amount: MoneyStr
    vat_rate: Decimal
    income_date: date
    description: Optional[str] = None
    is_fsmh_income: bool
    income_type: str
    is_tto_income: bool
    collected_amount: MoneyStr
    vat_amount: MoneyStr
    withholding_tax_amount: MoneyStr
    paid_vat_amount: MoneyStr
    net_amount: MoneyStr
    company_amount: MoneyStr
    distributable_amount: MoneyStr
    created_by: Optional[int] = None
    created_at: Optional[datetime] = None
    distributions: List[DistributionOut] = []

    class Config:
        from_attributes = True


class IncomeCreateOut(IncomeOut):
    budget_warning: Optional[str] = None


class CommissionOut(BaseModel):
    income_id: int
    company_rate: Decimal
    company_amount: MoneyStr
    collected_ratio: Decimal
    commission_collected: MoneyStr
    commission_outstanding: MoneyStr


# ---------- Endpoints ----------

@router.post(
    "/",
    response_model=IncomeCreateOut,
    status_code=status.HTTP_201_CREATED,
    summary="Create income, distribute to representatives and post balances",
)
def create_income(
    body: IncomeCreate,
    db: Session = Depends(get_db),
    current: CurrentUser = Depends(require_permissions(["incomes:write"])),
):
    result = income_service.create_income(
        db,
        project_id=body.project_id,
        gross_amount=body.gross_amount,
        income_date=body.income_date,
        vat_rate=body.vat_rate,
        description=body.description,
        is_fsmh_income=body.is_fsmh_income,
        income_type=body.income_type,
        is_tto_income=body.is_tto_income,
        created_by=current.id,
        max_retries=settings.LEDGER_MAX_RETRIES,
        lock_timeout=settings.LEDGER_LOCK_TIMEOUT_SECONDS,
    )
    data = IncomeOut.model_validate(result.income).model_dump()
    data["budget_warning"] = result.budget_warning
    return IncomeCreateOut.model_validate(data)


@router.get(
    "/",
    summary="List incomes (filters, paged)",
    dependencies=[Depends(require_permissions(["incomes:read"]))],
)
def list_incomes(
    page: int = Query(1, ge=1),
    size: int = Query(20, ge=1, le=100),
    project_id: Optional[int] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    is_fsmh_income: Optional[bool] = None,
    is_tto_income: Optional[bool] = None,
    income_type: Optional[str] = None,
    db: Session = Depends(get_db),
):
    qs = db.query(Income)
    if project_id is not None:
        qs = qs.filter(Income.project_id == project_id)
    if start_date is not None:
        qs = qs.filter(Income.income_date >= start_date)
    if end_date is not None:
        qs = qs.filter(Income.income_date <= end_date)
    if is_fsmh_income is not None:
        qs = qs.filter(Income.is_fsmh_income == is_fsmh_income)
    if is_tto_income is not None:
        qs = qs.filter(Income.is_tto_income == is_tto_income)
    if income_type:
        qs = qs.filter(Income.income_type == income_type)

    rows, meta = paginate(qs.order_by(Income.income_date.desc(), Income.id.desc()), page, size)
    return {"meta": meta, "items": [IncomeOut.model_validate(r) for r in rows]}


# NOT: /{income_id}'den önce tanımlı olmalı
@router.get(
    "/outstanding",
    summary="Outstanding receivables grouped by project",
    dependencies=[Depends(require_permissions(["incomes:read"]))],
)
def outstanding(project_id: Optional[int] = None, db: Session = Depends(get_db)):
    groups = project_service.outstanding_receivables(db, project_id)
    total = sum((g.outstanding for g in groups), ZERO)
    return {
        "total_outstanding": str(round_money(total)),
        "projects": [
            {
                "project_id": g.project_id,
                "code": g.code,
                "name": g.name,
                "budget": str(g.budget),
                "invoiced": str(round_money(g.invoiced)),
                "collected": str(round_money(g.collected)),
                "outstanding": str(round_money(g.outstanding)),
                "incomes": [
                    {
                        "id": i["id"],
                        "description": i["description"],
                        "date": i["date"].isoformat() if i["date"] else None,
                        "gross": str(i["gross"]),
                        "collected": str(i["collected"]),
                        "outstanding": str(i["outstanding"]),
                    }
                    for i in g.incomes
                ],
            }
            for g in groups
        ],
    }


def _get_or_404(db: Session, income_id: int) -> Income:
    inc = db.get(Income, income_id)
    if not inc:
        raise HTTPException(status_code=404, detail="Income not found")
    return inc


@router.get(
    "/{income_id}",
    response_model=IncomeOut,
    dependencies=[Depends(require_permissions(["incomes:read"]))],
)
def get_income(income_id: int, db: Session = Depends(get_db)):
    return IncomeOut.model_validate(_get_or_404(db, income_id))


@router.get(
    "/{income_id}/commission",
    response_model=CommissionOut,
    summary="TTO commission due / collected for one income",
    dependencies=[Depends(require_permissions(["incomes:read"]))],
)
def get_commission(income_id: int, db: Session = Depends(get_db)):
    inc = _get_or_404(db, income_id)
    gross = to_decimal(inc.gross_amount)
    commission = to_decimal(inc.company_amount)
    ratio = to_decimal(inc.collected_amount or 0) / gross if gross else ZERO
    collected = round_money(commission * ratio)
    return CommissionOut(
        income_id=inc.id,
        company_rate=to_decimal(inc.project.company_rate),
        company_amount=commission,
        collected_ratio=ratio.quantize(Decimal("0.0001")),
        commission_collected=collected,
        commission_outstanding=round_money(commission - collected),
    )


@router.patch(
    "/{income_id}/collection",
    response_model=IncomeOut,
    summary="Record collected amount",
)
def update_collection(
    income_id: int,
    body: CollectionUpdate,
    db: Session = Depends(get_db),
    current: CurrentUser = Depends(require_permissions(["incomes:write"])),
):
    _get_or_404(db, income_id)
    inc = income_service.record_collection(db, income_id, body.collected_amount)
    return IncomeOut.model_validate(inc)
