# backend/ttofin/services/errors.py
"""
Finans çekirdeğinin hata sınıfları.

Servisler bu hataları fırlatır; HTTP katmanı (main.py) tek bir exception
handler ile {"detail": ..., "code": ...} gövdesine çevirir.
"""


class FinanceError(Exception):
    code = "finance_error"
    status_code = 400

    def __init__(self, message: str, code: str = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code


class ValidationError(FinanceError):
    """Hatalı / aralık dışı girdi (negatif tutar, 0-100 dışı oran, eksik alan)."""
    code = "validation_error"
    status_code = 400


class NotFoundError(FinanceError):
    code = "not_found"
    status_code = 404


class InsufficientBalanceError(FinanceError):
    code = "insufficient_balance"
    status_code = 400


class PaymentError(FinanceError):
    code = "payment_error"
    status_code = 400


class MissingIBANError(PaymentError):
    code = "missing_iban"


class ConcurrencyConflictError(FinanceError):
    code = "concurrency_conflict"
    status_code = 409


class ReconciliationError(FinanceError):
    code = "reconciliation_error"
    status_code = 422
