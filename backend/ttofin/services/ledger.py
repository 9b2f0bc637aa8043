# backend/ttofin/services/ledger.py
"""
Bakiye defteri (balance ledger).

Kişi × proje bazında available / debt / reserved tutarlarını tutar. Bakiye
satırı sadece post_transaction / reverse_transaction / release_reservation
üzerinden değişir; her değişiklik için değişmez bir BalanceTransaction satırı
eklenir.

Aynı bakiye anahtarına gelen kayıtlar sıralanır:
  - süreç içi anahtar bazlı kilit (unit of work bitene kadar tutulur),
  - SELECT ... FOR UPDATE (destekleyen veritabanlarında satır kilidi),
  - Balance.version ile iyimser kontrol (süreçler arası kayıp güncelleme).
Çakışmada atomic() tüm işlemi geri alır ve sınırlı sayıda yeniden dener.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Iterator, List, Optional, TypeVar

from sqlalchemy import and_, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ..models import Balance, BalanceTransaction
from .calculator import ZERO, round_money, to_decimal
from .errors import (
    ConcurrencyConflictError,
    InsufficientBalanceError,
    NotFoundError,
    ValidationError,
)
from .persons import Person, UserRef, person_columns, person_of

log = logging.getLogger(__name__)

T = TypeVar("T")

TX_INCOME = "income"
TX_PAYMENT = "payment"
TX_DEBT = "debt"
TX_ADJUSTMENT = "adjustment"
TX_TYPES = (TX_INCOME, TX_PAYMENT, TX_DEBT, TX_ADJUSTMENT)

REF_INCOME = "income"
REF_PAYMENT_INSTRUCTION = "payment_instruction"
REF_MANUAL_ALLOCATION = "manual_allocation"
REF_REVERSAL = "balance_transaction"

DEFAULT_MAX_RETRIES = 3
DEFAULT_LOCK_TIMEOUT = 10.0

_UNIT_KEY = "ttofin.ledger_unit"
_LOCKS_KEY = "ttofin.ledger_locks"
_TIMEOUT_KEY = "ttofin.ledger_lock_timeout"


# ---------------------------
# Value objects
# ---------------------------
@dataclass(frozen=True)
class BalanceKey:
    person: Person
    project_id: Optional[int] = None

    def __str__(self) -> str:
        project = self.project_id if self.project_id is not None else "*"
        return f"{self.person.kind}:{self.person.id}:{project}"


@dataclass(frozen=True)
class Reference:
    type: str
    id: int


@dataclass(frozen=True)
class BalanceView:
    person: Person
    project_id: Optional[int]
    available_amount: Decimal
    debt_amount: Decimal
    reserved_amount: Decimal
    last_updated: Optional[datetime]


# ---------------------------
# Keyed locks
# ---------------------------
class KeyedLocks:
    """Anahtar başına bir RLock; aynı thread aynı anahtarı tekrar alabilir."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}

    def get(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.RLock()
            return lock


_locks = KeyedLocks()


def lock_key(db: Session, key: str) -> None:
    """Anahtarı kilitler; kilit atomic() commit/rollback yapınca bırakılır."""
    _require_unit(db)
    timeout = db.info.get(_TIMEOUT_KEY, DEFAULT_LOCK_TIMEOUT)
    lock = _locks.get(key)
    if not lock.acquire(timeout=timeout):
        raise ConcurrencyConflictError(f"Timed out waiting for ledger lock on {key}")
    db.info.setdefault(_LOCKS_KEY, []).append(lock)


def _release_locks(db: Session) -> None:
    held = db.info.pop(_LOCKS_KEY, [])
    for lock in reversed(held):
        lock.release()


def _require_unit(db: Session) -> None:
    if not db.info.get(_UNIT_KEY):
        raise RuntimeError("Ledger operations must run inside ledger.atomic()")


# ---------------------------
# Unit of work
# ---------------------------
def atomic(
    db: Session,
    operation: Callable[[], T],
    *,
    max_retries: int = DEFAULT_MAX_RETRIES,
    lock_timeout: Optional[float] = None,
) -> T:
    """
    operation() çalıştırır ve commit eder. Çakışmada rollback + yeniden dener
    (toplam max_retries deneme), sonra ConcurrencyConflictError fırlatır.
    Diğer tüm hatalarda rollback yapılır ve hata aynen yükselir.
    İç içe çağrılırsa dıştaki unit of work'e katılır.
    """
    if db.info.get(_UNIT_KEY):
        return operation()

    attempts = max(1, int(max_retries))
    for attempt in range(1, attempts + 1):
        db.info[_UNIT_KEY] = True
        if lock_timeout is not None:
            db.info[_TIMEOUT_KEY] = lock_timeout
        try:
            result = operation()
            db.commit()
            return result
        except (ConcurrencyConflictError, StaleDataError) as exc:
            db.rollback()
            if attempt >= attempts:
                log.error("ledger conflict not resolved after %d attempts: %s", attempts, exc)
                raise ConcurrencyConflictError(
                    f"Balance was modified concurrently; gave up after {attempts} attempts"
                ) from exc
            log.warning("ledger conflict (attempt %d/%d), retrying: %s", attempt, attempts, exc)
        except Exception:
            db.rollback()
            raise
        finally:
            _release_locks(db)
            db.info.pop(_UNIT_KEY, None)
            db.info.pop(_TIMEOUT_KEY, None)
    raise AssertionError("unreachable")  # pragma: no cover


# ---------------------------
# Internal helpers
# ---------------------------
def key_of(balance: Balance) -> BalanceKey:
    return BalanceKey(person_of(balance), balance.project_id)


def _load_balance(db: Session, key: BalanceKey) -> Balance:
    stmt = (
        select(Balance)
        .where(Balance.balance_key == str(key))
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    bal = db.execute(stmt).scalar_one_or_none()
    if bal is not None:
        return bal

    bal = Balance(
        balance_key=str(key),
        project_id=key.project_id,
        available_amount=ZERO,
        debt_amount=ZERO,
        reserved_amount=ZERO,
        last_updated=datetime.utcnow(),
        **person_columns(key.person),
    )
    db.add(bal)
    try:
        db.flush()
    except IntegrityError as exc:
        # Başka bir istek aynı anahtarı bizden önce oluşturdu
        raise ConcurrencyConflictError(f"Balance {key} was created concurrently") from exc
    log.info("balance created key=%s id=%s", key, bal.id)
    return bal


def _dec(value: Any) -> Decimal:
    return round_money(to_decimal(value if value is not None else 0))


def _append(
    db: Session,
    bal: Balance,
    tx_type: str,
    available_delta: Decimal,
    reserved_delta: Decimal,
    debt_delta: Decimal,
    reference: Optional[Reference],
    description: Optional[str],
    created_by: Optional[int],
) -> BalanceTransaction:
    before = _dec(bal.available_amount)
    after = round_money(before + available_delta)
    reserved = round_money(_dec(bal.reserved_amount) + reserved_delta)
    debt = round_money(_dec(bal.debt_amount) + debt_delta)

    if after < ZERO:
        raise InsufficientBalanceError(
            f"Insufficient balance. Available: {before}, requested: {-available_delta}"
        )
    if reserved < ZERO:
        raise ValidationError("Reserved amount cannot go below zero")
    if debt < ZERO:
        raise ValidationError("Debt amount cannot go below zero")

    # created_at bakiye bazında azalmaz; eşitlikte id sırası geçerli
    now = datetime.utcnow()
    if bal.last_updated is not None and bal.last_updated > now:
        now = bal.last_updated

    tx = BalanceTransaction(
        balance_id=bal.id,
        type=tx_type,
        amount=round_money(available_delta),
        reserved_delta=round_money(reserved_delta),
        debt_delta=round_money(debt_delta),
        balance_before=before,
        balance_after=after,
        reference_type=reference.type if reference else None,
        reference_id=reference.id if reference else None,
        description=description,
        created_by=created_by,
        created_at=now,
    )
    bal.available_amount = after
    bal.reserved_amount = reserved
    bal.debt_amount = debt
    bal.last_updated = now
    db.add(tx)
    db.flush()

    log.info(
        "ledger post balance=%s type=%s amount=%s before=%s after=%s ref=%s:%s",
        bal.balance_key, tx_type, tx.amount, before, after,
        tx.reference_type, tx.reference_id,
    )
    return tx


# ---------------------------
# Postings
# ---------------------------
def post_transaction(
    db: Session,
    key: BalanceKey,
    tx_type: str,
    amount: Any,
    *,
    reference: Optional[Reference] = None,
    description: Optional[str] = None,
    created_by: Optional[int] = None,
) -> BalanceTransaction:
    """
    income     : available += amount
    payment    : available -= amount, reserved += amount (eksi bakiyeye izin yok)
    debt       : karşılanabilen kısım available'dan düşer, kalan debt'e yazılır
    adjustment : işaretli manuel düzeltme; açıklama zorunlu
    """
    _require_unit(db)
    if tx_type not in TX_TYPES:
        raise ValidationError(f"Unknown transaction type '{tx_type}'")
    amt = round_money(to_decimal(amount, "amount"))

    if tx_type == TX_ADJUSTMENT:
        if not (description or "").strip():
            raise ValidationError("Adjustments require a description")
        if amt == ZERO:
            raise ValidationError("Adjustment amount cannot be zero")
    elif amt <= ZERO:
        raise ValidationError("amount must be greater than 0")

    lock_key(db, str(key))
    bal = _load_balance(db, key)
    available = _dec(bal.available_amount)

    if tx_type == TX_INCOME:
        deltas = (amt, ZERO, ZERO)
    elif tx_type == TX_PAYMENT:
        if amt > available:
            raise InsufficientBalanceError(
                f"Insufficient balance. Available: {available}, requested: {amt}"
            )
        deltas = (-amt, amt, ZERO)
    elif tx_type == TX_DEBT:
        covered = min(amt, available)
        deltas = (-covered, ZERO, amt - covered)
    else:
        deltas = (amt, ZERO, ZERO)

    return _append(db, bal, tx_type, *deltas, reference, description, created_by)


def release_reservation(
    db: Session,
    key: BalanceKey,
    amount: Any,
    *,
    reference: Optional[Reference] = None,
    description: str,
    created_by: Optional[int] = None,
) -> BalanceTransaction:
    """Tamamlanan ödemenin tutarını reserved'dan düşer (available değişmez)."""
    _require_unit(db)
    amt = round_money(to_decimal(amount, "amount"))
    if amt <= ZERO:
        raise ValidationError("amount must be greater than 0")
    lock_key(db, str(key))
    bal = _load_balance(db, key)
    return _append(db, bal, TX_ADJUSTMENT, ZERO, -amt, ZERO, reference, description, created_by)


def reverse_transaction(
    db: Session,
    transaction_id: int,
    *,
    description: str,
    created_by: Optional[int] = None,
) -> BalanceTransaction:
    """Orijinal kaydın available/reserved/debt etkisini tersine çeviren adjustment ekler."""
    _require_unit(db)
    if not (description or "").strip():
        raise ValidationError("Reversals require a description")

    original = db.get(BalanceTransaction, transaction_id)
    if original is None:
        raise NotFoundError(f"Balance transaction {transaction_id} not found")
    if original.reference_type == REF_REVERSAL:
        raise ValidationError("A reversal cannot itself be reversed")

    key = key_of(db.get(Balance, original.balance_id))
    lock_key(db, str(key))

    already = db.execute(
        select(BalanceTransaction.id).where(
            BalanceTransaction.reference_type == REF_REVERSAL,
            BalanceTransaction.reference_id == original.id,
        )
    ).first()
    if already is not None:
        raise ValidationError(f"Balance transaction {transaction_id} has already been reversed")

    bal = _load_balance(db, key)
    return _append(
        db,
        bal,
        TX_ADJUSTMENT,
        -_dec(original.amount),
        -_dec(original.reserved_delta),
        -_dec(original.debt_delta),
        Reference(REF_REVERSAL, original.id),
        description,
        created_by,
    )


# ---------------------------
# Queries
# ---------------------------
def get_balance(db: Session, person: Person, project_id: Optional[int] = None) -> BalanceView:
    """Proje verilmezse kişinin tüm bakiyelerinin toplamı döner."""
    if isinstance(person, UserRef):
        who = Balance.user_id == person.id
    else:
        who = Balance.personnel_id == person.id

    stmt = select(
        func.coalesce(func.sum(Balance.available_amount), 0),
        func.coalesce(func.sum(Balance.debt_amount), 0),
        func.coalesce(func.sum(Balance.reserved_amount), 0),
        func.max(Balance.last_updated),
    ).where(who)
    if project_id is not None:
        stmt = stmt.where(Balance.project_id == project_id)

    available, debt, reserved, last_updated = db.execute(stmt).one()
    return BalanceView(
        person=person,
        project_id=project_id,
        available_amount=_dec(available),
        debt_amount=_dec(debt),
        reserved_amount=_dec(reserved),
        last_updated=last_updated,
    )


def get_transaction_history(
    db: Session,
    balance_id: int,
    *,
    tx_type: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    newest_first: bool = False,
    batch_size: int = 100,
) -> Iterator[BalanceTransaction]:
    """
    Bakiyenin hareketlerini (created_at, id) sırasıyla, batch_size'lık
    parçalar halinde tembel olarak döner. Üretilen iterator tek kullanımlıktır.
    """
    if db.get(Balance, balance_id) is None:
        raise NotFoundError(f"Balance {balance_id} not found")
    if tx_type is not None and tx_type not in TX_TYPES:
        raise ValidationError(f"Unknown transaction type '{tx_type}'")
    if batch_size < 1:
        raise ValidationError("batch_size must be positive")

    def _rows() -> Iterator[BalanceTransaction]:
        cursor = None
        while True:
            stmt = select(BalanceTransaction).where(BalanceTransaction.balance_id == balance_id)
            if tx_type:
                stmt = stmt.where(BalanceTransaction.type == tx_type)
            if start is not None:
                stmt = stmt.where(BalanceTransaction.created_at >= start)
            if end is not None:
                stmt = stmt.where(BalanceTransaction.created_at <= end)

            if cursor is not None:
                ts, last_id = cursor
                if newest_first:
                    stmt = stmt.where(
                        or_(
                            BalanceTransaction.created_at < ts,
                            and_(BalanceTransaction.created_at == ts, BalanceTransaction.id < last_id),
                        )
                    )
                else:
                    stmt = stmt.where(
                        or_(
                            BalanceTransaction.created_at > ts,
                            and_(BalanceTransaction.created_at == ts, BalanceTransaction.id > last_id),
                        )
                    )

            if newest_first:
                stmt = stmt.order_by(BalanceTransaction.created_at.desc(), BalanceTransaction.id.desc())
            else:
                stmt = stmt.order_by(BalanceTransaction.created_at.asc(), BalanceTransaction.id.asc())

            rows = db.execute(stmt.limit(batch_size)).scalars().all()
            yield from rows
            if len(rows) < batch_size:
                return
            cursor = (rows[-1].created_at, rows[-1].id)

    return _rows()


def check_balance_integrity(db: Session, balance_id: int) -> List[str]:
    """
    Defter zincirini doğrular: ardışık kayıtlarda after(N) == before(N+1),
    Σ amount == available, Σ reserved_delta == reserved, Σ debt_delta == debt.
    Sorun yoksa boş liste döner.
    """
    bal = db.get(Balance, balance_id)
    if bal is None:
        raise NotFoundError(f"Balance {balance_id} not found")

    problems: List[str] = []
    running = ZERO
    reserved = ZERO
    debt = ZERO
    prev_after: Optional[Decimal] = None
    for tx in get_transaction_history(db, balance_id):
        before, after = _dec(tx.balance_before), _dec(tx.balance_after)
        if prev_after is not None and before != prev_after:
            problems.append(f"tx {tx.id}: balance_before {before} != previous balance_after {prev_after}")
        if round_money(before + _dec(tx.amount)) != after:
            problems.append(f"tx {tx.id}: before + amount != after")
        running += _dec(tx.amount)
        reserved += _dec(tx.reserved_delta)
        debt += _dec(tx.debt_delta)
        prev_after = after

    if running != _dec(bal.available_amount):
        problems.append(f"available_amount {bal.available_amount} != ledger sum {running}")
    if reserved != _dec(bal.reserved_amount):
        problems.append(f"reserved_amount {bal.reserved_amount} != ledger sum {reserved}")
    if debt != _dec(bal.debt_amount):
        problems.append(f"debt_amount {bal.debt_amount} != ledger sum {debt}")
    return problems
