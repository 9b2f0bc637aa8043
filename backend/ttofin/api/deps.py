# backend/ttofin/api/deps.py
from typing import Dict, List, Optional, Set

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from ..core.config import get_db
from ..core.security import decode_token
from ..models import User

# Swagger'da "Authorize" için tek Bearer alanı
auth_scheme = HTTPBearer(auto_error=True)

__all__ = ["get_db", "CurrentUser", "get_current_user", "require_permissions", "is_staff"]


# ---------------------------
# Current User DTO
# ---------------------------
class CurrentUser:
    def __init__(self, id: int, email: str, role_name: str):
        self.id = id
        self.email = email
        self.role_name = role_name


# ---------------------------
# AuthN: Token → CurrentUser
# ---------------------------
async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
    db: Session = Depends(get_db),
) -> CurrentUser:
    try:
        payload = decode_token(credentials.credentials)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user_id: Optional[str] = payload.get("sub")
    role_name_from_token: Optional[str] = payload.get("role")
    if user_id is None or not str(user_id).isdigit():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user = db.get(User, int(user_id))
    if not user or not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
            headers={"WWW-Authenticate": "Bearer"},
        )

    # Token'daki rol yoksa DB'deki rol adını kullan
    role_name = role_name_from_token or user.role_name or ""
    return CurrentUser(id=user.id, email=user.email, role_name=role_name)


# ---------------------------
# AuthZ: Permission Check
# ---------------------------

# Rol bazlı izinler
ROLE_PERMS: Dict[str, Set[str]] = {
    "admin": {"*"},
    "manager": {"projects:*", "incomes:*", "payments:*", "balances:*"},
    "finance_officer": {"projects:read", "incomes:*", "payments:*", "balances:*"},
    "academician": {
        "projects:read",
        "incomes:read",
        "balances:read",
        "payments:read",
        "payments:request",
    },
}

# Tüm bakiyeleri / talimatları görebilen roller
STAFF_ROLES = ("admin", "manager", "finance_officer")


def is_staff(current: CurrentUser) -> bool:
    return current.role_name in STAFF_ROLES


def _perm_allows(perms: Set[str], needed: str) -> bool:
    """
    Eşleşme:
      - birebir: needed ∈ perms
      - global wildcard: "*" ∈ perms
      - kaynak bazlı wildcard: "resource:*" ∈ perms  ↔  "resource:action" needed
    """
    if needed in perms or "*" in perms:
        return True
    if ":" in needed:
        resource, _ = needed.split(":", 1)
        return f"{resource}:*" in perms
    return False


def require_permissions(required: List[str]):
    """
    Kullanım:
      dependencies=[Depends(require_permissions(["incomes:write"]))]

    required listesindeki herhangi biri kullanıcının rolü tarafından
    karşılanıyorsa izin verilir.
    """
    required_set: Set[str] = set(required)

    def checker(current: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        perms = ROLE_PERMS.get(current.role_name, set())
        if any(_perm_allows(perms, r) for r in required_set):
            return current
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Permission denied")

    return checker
