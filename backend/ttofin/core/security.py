from datetime import datetime, timedelta
from typing import Optional
from jose import jwt, JWTError
from .config import settings

# Token üretimi giriş akışının işi; burada sadece imzalama/çözme var.
def create_access_token(
    subject: str,              # kullanıcı id (string)
    role_name: str,            # kullanıcının rolü
    expires_minutes: Optional[int] = None
) -> str:
    expire = datetime.utcnow() + timedelta(
        minutes=expires_minutes or settings.ACCESS_TOKEN_EXPIRE_MINUTES
    )
    payload = {"sub": subject, "role": role_name, "exp": expire}
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.ALGORITHM)

def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError as e:
        raise ValueError("Invalid token") from e
