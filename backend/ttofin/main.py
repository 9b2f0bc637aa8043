# backend/ttofin/main.py
import logging
import time

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api import balances, incomes, payments, projects
from .api.deps import CurrentUser, get_current_user
from .core.config import settings
from .core.log import configure_logging
from .services.errors import FinanceError

configure_logging(settings.LOG_LEVEL)
log = logging.getLogger(__name__)

app = FastAPI(title="TTO Finance API")

# ---------------------------
# CORS (frontend dev servers)
# ---------------------------
DEFAULT_CORS_ORIGINS = [
    "http://localhost:5173",
    "http://127.0.0.1:5173",
    "http://localhost:3000",
    "http://127.0.0.1:3000",
]


def _resolve_allowed_origins() -> list[str]:
    # settings.CORS_ALLOW_ORIGINS virgüllü string (veya liste) olabilir
    raw = getattr(settings, "CORS_ALLOW_ORIGINS", None)
    if not raw:
        return DEFAULT_CORS_ORIGINS
    if isinstance(raw, (list, tuple)):
        vals = [str(x).strip().rstrip("/") for x in raw if str(x).strip()]
    else:
        vals = [s.strip().rstrip("/") for s in str(raw).split(",") if s.strip()]
    # Credentials modunda "*" kullanılamaz; dev listesine indir
    if len(vals) == 1 and vals[0] == "*":
        return DEFAULT_CORS_ORIGINS
    return vals or DEFAULT_CORS_ORIGINS


ALLOW_ORIGINS = _resolve_allowed_origins()

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOW_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started) * 1000
    log.info("%s %s -> %s (%.1f ms)", request.method, request.url.path, response.status_code, elapsed_ms)
    return response


# ---------------------------
# Domain errors → HTTP
# ---------------------------
@app.exception_handler(FinanceError)
async def finance_error_handler(request: Request, exc: FinanceError):
    log.warning("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.code)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "code": exc.code})


# ---------------------------
# Health & Current User
# ---------------------------
@app.get("/health", tags=["system"])
def health():
    return {"status": "ok"}


@app.get("/me", tags=["auth"])
def me(current: CurrentUser = Depends(get_current_user)):
    return {
        "id": current.id,
        "email": current.email,
        "role": current.role_name,
    }


# ---------------------------
# Routers
# ---------------------------
app.include_router(projects.router)
app.include_router(incomes.router)
app.include_router(payments.router)
app.include_router(balances.router)
