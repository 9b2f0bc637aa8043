# backend/ttofin/api/payments.py
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..core.config import settings
from ..models import PaymentInstruction
from ..services import payments as payment_service
from ..services.persons import UserRef
from .common import MoneyStr, PersonIn, paginate
from .deps import CurrentUser, get_current_user, get_db, is_staff, require_permissions

router = APIRouter(prefix="/payments", tags=["payments"])


# ---------- Pydantic şemaları ----------

class PaymentItemIn(BaseModel):
    amount: Decimal
    description: Optional[str] = None
    income_distribution_id: Optional[int] = None  # boşsa manuel kalem


class PaymentCreate(PersonIn):
    project_id: int
    items: List[PaymentItemIn] = Field(default_factory=list)
    notes: Optional[str] = None


class PaymentRequest(BaseModel):
    project_id: int
    amount: Decimal
    notes: Optional[str] = None


class StatusUpdate(BaseModel):
    status: str  # approved | processing | completed | rejected
    notes: Optional[str] = None


class PaymentItemOut(BaseModel):
    id: int
    income_distribution_id: Optional[int] = None
    amount: MoneyStr
    description: Optional[str] = None

    class Config:
        from_attributes = True


class PaymentOut(BaseModel):
    id: int
    instruction_number: str
    user_id: Optional[int] = None
    personnel_id: Optional[int] = None
    project_id: int
    total_amount: MoneyStr
    status: str
    notes: Optional[str] = None
    created_by: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    items: List[PaymentItemOut] = []

    class Config:
        from_attributes = True


def _ledger_opts():
    return {
        "max_retries": settings.LEDGER_MAX_RETRIES,
        "lock_timeout": settings.LEDGER_LOCK_TIMEOUT_SECONDS,
    }


# ---------- Endpoints ----------

@router.post(
    "/",
    response_model=PaymentOut,
    status_code=status.HTTP_201_CREATED,
    summary="Create payment instruction (reserves recipient balance)",
)
def create_payment(
    body: PaymentCreate,
    db: Session = Depends(get_db),
    current: CurrentUser = Depends(require_permissions(["payments:write"])),
):
    instr = payment_service.create_payment_instruction(
        db,
        body.to_person(),
        body.project_id,
        [
            payment_service.PaymentItemInput(
                amount=i.amount, description=i.description, income_distribution_id=i.income_distribution_id
            )
            for i in body.items
        ],
        notes=body.notes,
        created_by=current.id,
        **_ledger_opts(),
    )
    return PaymentOut.model_validate(instr)


@router.post(
    "/request",
    response_model=PaymentOut,
    status_code=status.HTTP_201_CREATED,
    summary="Request withdrawal from own project balance",
)
def request_payment(
    body: PaymentRequest,
    db: Session = Depends(get_db),
    current: CurrentUser = Depends(require_permissions(["payments:request"])),
):
    instr = payment_service.request_payment(
        db,
        UserRef(current.id),
        body.project_id,
        body.amount,
        notes=body.notes,
        **_ledger_opts(),
    )
    return PaymentOut.model_validate(instr)


@router.get(
    "/",
    summary="List payment instructions (filters, paged)",
    dependencies=[Depends(require_permissions(["payments:read"]))],
)
def list_payments(
    page: int = Query(1, ge=1),
    size: int = Query(20, ge=1, le=100),
    status_filter: Optional[str] = Query(None, alias="status"),
    project_id: Optional[int] = None,
    user_id: Optional[int] = None,
    personnel_id: Optional[int] = None,
    db: Session = Depends(get_db),
    current: CurrentUser = Depends(get_current_user),
):
    qs = db.query(PaymentInstruction)
    # Akademisyen sadece kendi talimatlarını görür
    if not is_staff(current):
        qs = qs.filter(PaymentInstruction.user_id == current.id)
    else:
        if user_id is not None:
            qs = qs.filter(PaymentInstruction.user_id == user_id)
        if personnel_id is not None:
            qs = qs.filter(PaymentInstruction.personnel_id == personnel_id)
    if status_filter:
        qs = qs.filter(PaymentInstruction.status == status_filter)
    if project_id is not None:
        qs = qs.filter(PaymentInstruction.project_id == project_id)

    rows, meta = paginate(qs.order_by(PaymentInstruction.id.desc()), page, size)
    return {"meta": meta, "items": [PaymentOut.model_validate(r) for r in rows]}


@router.get(
    "/{instruction_id}",
    response_model=PaymentOut,
    dependencies=[Depends(require_permissions(["payments:read"]))],
)
def get_payment(
    instruction_id: int,
    db: Session = Depends(get_db),
    current: CurrentUser = Depends(get_current_user),
):
    instr = db.get(PaymentInstruction, instruction_id)
    if not instr or (not is_staff(current) and instr.user_id != current.id):
        raise HTTPException(status_code=404, detail="Payment instruction not found")
    return PaymentOut.model_validate(instr)


@router.patch(
    "/{instruction_id}/status",
    response_model=PaymentOut,
    summary="Change instruction status (approve / process / complete / reject)",
)
def change_status(
    instruction_id: int,
    body: StatusUpdate,
    db: Session = Depends(get_db),
    current: CurrentUser = Depends(require_permissions(["payments:write"])),
):
    if not db.get(PaymentInstruction, instruction_id):
        raise HTTPException(status_code=404, detail="Payment instruction not found")
    instr = payment_service.change_payment_status(
        db,
        instruction_id,
        body.status,
        notes=body.notes,
        actor_id=current.id,
        **_ledger_opts(),
    )
    return PaymentOut.model_validate(instr)
