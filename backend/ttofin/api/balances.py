# backend/ttofin/api/balances.py
from datetime import datetime
from decimal import Decimal
from itertools import islice
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel
from sqlalchemy import func
from sqlalchemy.orm import Session

from ..core.config import settings
from ..models import Balance, BalanceTransaction
from ..services import allocations as allocation_service
from ..services import ledger
from ..services.persons import UserRef, person_columns, person_from_ids
from .common import MoneyStr, PersonIn, page_meta, paginate
from .deps import CurrentUser, get_current_user, get_db, is_staff, require_permissions

router = APIRouter(prefix="/balances", tags=["balances"])


# ---------- Pydantic şemaları ----------

class BalanceOut(BaseModel):
    id: int
    user_id: Optional[int] = None
    personnel_id: Optional[int] = None
    project_id: Optional[int] = None
    available_amount: MoneyStr
    debt_amount: MoneyStr
    reserved_amount: MoneyStr
    last_updated: Optional[datetime] = None

    class Config:
        from_attributes = True


class BalanceSummaryOut(BaseModel):
    user_id: Optional[int] = None
    personnel_id: Optional[int] = None
    project_id: Optional[int] = None
    available_amount: MoneyStr
    debt_amount: MoneyStr
    reserved_amount: MoneyStr
    last_updated: Optional[datetime] = None


class TransactionOut(BaseModel):
    id: int
    balance_id: int
    type: str
    amount: MoneyStr
    reserved_delta: MoneyStr
    debt_delta: MoneyStr
    balance_before: MoneyStr
    balance_after: MoneyStr
    reference_type: Optional[str] = None
    reference_id: Optional[int] = None
    description: Optional[str] = None
    created_by: Optional[int] = None
    created_at: datetime

    class Config:
        from_attributes = True


class ManualAllocationIn(PersonIn):
    project_id: int
    amount: Decimal  # eksi tutar bakiye düşer
    notes: Optional[str] = None


class ManualAllocationOut(BaseModel):
    id: int
    project_id: int
    user_id: Optional[int] = None
    personnel_id: Optional[int] = None
    amount: MoneyStr
    notes: Optional[str] = None
    created_by: Optional[int] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class RepresentativeAllocationOut(BaseModel):
    user_id: Optional[int] = None
    personnel_id: Optional[int] = None
    full_name: str
    is_leader: bool
    share_percentage: Decimal
    allocated_amount: MoneyStr
    available_amount: MoneyStr
    debt_amount: MoneyStr
    reserved_amount: MoneyStr


class AllocationSummaryOut(BaseModel):
    project_id: int
    total_distributable: MoneyStr
    total_allocated: MoneyStr
    remaining_allocatable: MoneyStr
    representatives: List[RepresentativeAllocationOut]


class DebtIn(PersonIn):
    project_id: Optional[int] = None
    amount: Decimal
    description: str


class ReverseIn(BaseModel):
    description: str


def _ledger_opts():
    return {
        "max_retries": settings.LEDGER_MAX_RETRIES,
        "lock_timeout": settings.LEDGER_LOCK_TIMEOUT_SECONDS,
    }


def _visible_balance(db: Session, balance_id: int, current: CurrentUser) -> Balance:
    bal = db.get(Balance, balance_id)
    if not bal or (not is_staff(current) and bal.user_id != current.id):
        raise HTTPException(status_code=404, detail="Balance not found")
    return bal


# ---------- Endpoints ----------

@router.get(
    "/",
    summary="List balances (filters, paged)",
    dependencies=[Depends(require_permissions(["balances:read"]))],
)
def list_balances(
    page: int = Query(1, ge=1),
    size: int = Query(20, ge=1, le=100),
    user_id: Optional[int] = None,
    personnel_id: Optional[int] = None,
    project_id: Optional[int] = None,
    db: Session = Depends(get_db),
    current: CurrentUser = Depends(get_current_user),
):
    qs = db.query(Balance)
    if not is_staff(current):
        qs = qs.filter(Balance.user_id == current.id)
    else:
        if user_id is not None:
            qs = qs.filter(Balance.user_id == user_id)
        if personnel_id is not None:
            qs = qs.filter(Balance.personnel_id == personnel_id)
    if project_id is not None:
        qs = qs.filter(Balance.project_id == project_id)

    rows, meta = paginate(qs.order_by(Balance.id.asc()), page, size)
    return {"meta": meta, "items": [BalanceOut.model_validate(r) for r in rows]}


@router.get(
    "/summary",
    response_model=BalanceSummaryOut,
    summary="Aggregated balance of one person (optionally one project)",
    dependencies=[Depends(require_permissions(["balances:read"]))],
)
def balance_summary(
    user_id: Optional[int] = None,
    personnel_id: Optional[int] = None,
    project_id: Optional[int] = None,
    db: Session = Depends(get_db),
    current: CurrentUser = Depends(get_current_user),
):
    if user_id is None and personnel_id is None:
        person = UserRef(current.id)
    else:
        person = person_from_ids(user_id, personnel_id)
    if not is_staff(current) and person != UserRef(current.id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Permission denied")

    view = ledger.get_balance(db, person, project_id)
    return BalanceSummaryOut(
        **person_columns(person),
        project_id=view.project_id,
        available_amount=view.available_amount,
        debt_amount=view.debt_amount,
        reserved_amount=view.reserved_amount,
        last_updated=view.last_updated,
    )


@router.get(
    "/{balance_id}/transactions",
    summary="Balance transaction history (type/date filters, paged)",
    dependencies=[Depends(require_permissions(["balances:read"]))],
)
def list_transactions(
    balance_id: int,
    page: int = Query(1, ge=1),
    size: int = Query(50, ge=1, le=200),
    type: Optional[str] = Query(None, description="income | payment | debt | adjustment"),
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    order: str = Query("desc", pattern="^(asc|desc)$"),
    db: Session = Depends(get_db),
    current: CurrentUser = Depends(get_current_user),
):
    _visible_balance(db, balance_id, current)

    history = ledger.get_transaction_history(
        db, balance_id, tx_type=type, start=start, end=end, newest_first=(order == "desc"), batch_size=size
    )
    offset = (page - 1) * size
    rows = list(islice(history, offset, offset + size))

    count_q = db.query(func.count(BalanceTransaction.id)).filter(BalanceTransaction.balance_id == balance_id)
    if type:
        count_q = count_q.filter(BalanceTransaction.type == type)
    if start is not None:
        count_q = count_q.filter(BalanceTransaction.created_at >= start)
    if end is not None:
        count_q = count_q.filter(BalanceTransaction.created_at <= end)
    total = count_q.scalar() or 0

    return {"meta": page_meta(total, page, size), "items": [TransactionOut.model_validate(r) for r in rows]}


@router.get(
    "/{balance_id}/integrity",
    summary="Verify ledger chain and totals of one balance",
    dependencies=[Depends(require_permissions(["balances:write"]))],
)
def balance_integrity(balance_id: int, db: Session = Depends(get_db)):
    if not db.get(Balance, balance_id):
        raise HTTPException(status_code=404, detail="Balance not found")
    problems = ledger.check_balance_integrity(db, balance_id)
    return {"balance_id": balance_id, "ok": not problems, "problems": problems}


@router.get(
    "/manual-allocation",
    response_model=AllocationSummaryOut,
    summary="Manual allocation summary of a project (per representative)",
    dependencies=[Depends(require_permissions(["balances:write"]))],
)
def manual_allocation_summary(
    project_id: int = Query(...),
    db: Session = Depends(get_db),
):
    summary = allocation_service.allocation_summary(db, project_id)
    return AllocationSummaryOut(
        project_id=summary.project_id,
        total_distributable=summary.total_distributable,
        total_allocated=summary.total_allocated,
        remaining_allocatable=summary.remaining_allocatable,
        representatives=[
            RepresentativeAllocationOut(
                **person_columns(r.person),
                full_name=r.full_name,
                is_leader=r.is_leader,
                share_percentage=r.share_percentage,
                allocated_amount=r.allocated_amount,
                available_amount=r.available_amount,
                debt_amount=r.debt_amount,
                reserved_amount=r.reserved_amount,
            )
            for r in summary.representatives
        ],
    )


@router.post(
    "/manual-allocation",
    response_model=ManualAllocationOut,
    status_code=status.HTTP_201_CREATED,
    summary="Manually add (or deduct) balance for a project representative",
)
def manual_allocation(
    body: ManualAllocationIn,
    db: Session = Depends(get_db),
    current: CurrentUser = Depends(require_permissions(["balances:write"])),
):
    alloc = allocation_service.create_manual_allocation(
        db,
        project_id=body.project_id,
        person=body.to_person(),
        amount=body.amount,
        notes=body.notes,
        created_by=current.id,
        **_ledger_opts(),
    )
    return ManualAllocationOut.model_validate(alloc)


@router.post(
    "/debts",
    response_model=TransactionOut,
    status_code=status.HTTP_201_CREATED,
    summary="Record a debt (covered from available, remainder to debt)",
)
def record_debt(
    body: DebtIn,
    db: Session = Depends(get_db),
    current: CurrentUser = Depends(require_permissions(["balances:write"])),
):
    tx = allocation_service.record_debt(
        db,
        person=body.to_person(),
        project_id=body.project_id,
        amount=body.amount,
        description=body.description,
        created_by=current.id,
        **_ledger_opts(),
    )
    return TransactionOut.model_validate(tx)


@router.post(
    "/transactions/{transaction_id}/reverse",
    response_model=TransactionOut,
    status_code=status.HTTP_201_CREATED,
    summary="Post a compensating adjustment for one transaction",
)
def reverse_transaction(
    transaction_id: int,
    body: ReverseIn,
    db: Session = Depends(get_db),
    current: CurrentUser = Depends(require_permissions(["balances:write"])),
):
    if not db.get(BalanceTransaction, transaction_id):
        raise HTTPException(status_code=404, detail="Transaction not found")
    tx = allocation_service.reverse(
        db, transaction_id, description=body.description, created_by=current.id, **_ledger_opts()
    )
    return TransactionOut.model_validate(tx)
