# backend/ttofin/services/persons.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from sqlalchemy.orm import Session

from ..models import Personnel, User
from .errors import NotFoundError, ValidationError


@dataclass(frozen=True)
class UserRef:
    id: int
    kind = "user"


@dataclass(frozen=True)
class PersonnelRef:
    id: int
    kind = "personnel"


Person = Union[UserRef, PersonnelRef]


def person_from_ids(user_id: Optional[int], personnel_id: Optional[int]) -> Person:
    """user_id / personnel_id çiftinden tam olarak birinin dolu olmasını ister."""
    if user_id is not None and personnel_id is not None:
        raise ValidationError("Only one of user_id or personnel_id may be given")
    if user_id is not None:
        return UserRef(int(user_id))
    if personnel_id is not None:
        return PersonnelRef(int(personnel_id))
    raise ValidationError("Either user_id or personnel_id is required")


def person_of(row: Any) -> Person:
    """user_id/personnel_id kolonları olan herhangi bir ORM satırından Person üretir."""
    return person_from_ids(getattr(row, "user_id", None), getattr(row, "personnel_id", None))


def person_columns(person: Person) -> Dict[str, Optional[int]]:
    if isinstance(person, UserRef):
        return {"user_id": person.id, "personnel_id": None}
    return {"user_id": None, "personnel_id": person.id}


def load_person(db: Session, person: Person):
    model = User if isinstance(person, UserRef) else Personnel
    row = db.get(model, person.id)
    if row is None:
        raise NotFoundError(f"{person.kind.capitalize()} {person.id} not found")
    return row
