# backend/ttofin/api/common.py
from decimal import Decimal
from typing import Annotated, Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, PlainSerializer

from ..services.calculator import round_money, to_decimal
from ..services.persons import Person, person_from_ids

# JSON'da tutarlar her zaman 2 haneli string ("54000.00")
MoneyStr = Annotated[
    Decimal,
    PlainSerializer(lambda v: str(round_money(to_decimal(v))), return_type=str, when_used="json"),
]


class PersonIn(BaseModel):
    """user_id veya personnel_id alanlarından tam olarak biri dolu olmalı."""
    user_id: Optional[int] = None
    personnel_id: Optional[int] = None

    def to_person(self) -> Person:
        return person_from_ids(self.user_id, self.personnel_id)


def page_meta(total: int, page: int, size: int) -> Dict[str, int]:
    return {
        "total": total,
        "page": page,
        "size": size,
        "pages": max(1, (total + size - 1) // size),
    }


def paginate(qs, page: int, size: int) -> Tuple[List[Any], Dict[str, int]]:
    total = qs.count()
    rows = qs.offset((page - 1) * size).limit(size).all()
    return rows, page_meta(total, page, size)
