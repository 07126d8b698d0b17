"""
Error types for the invoice reconciliation engine.

Every fatal condition raised while reconciling an account derives from
ReconciliationError. Context (which invoice, which account) is added by
wrapping with ``raise ... from err`` as the error unwinds, so the full cause
chain is available through chain_message().
"""
from datetime import datetime, timezone


class ReconciliationError(Exception):
    """
    Base exception for reconciliation failures.

    Attributes:
        message: Human-readable error message
        error_code: Code used to categorize the failure
        details: Extra context (invoice number, amounts, ...)
        timestamp: When the error was raised
    """

    def __init__(self, message, error_code=None, details=None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc).isoformat()

    def chain_message(self):
        """Messages of this error and all of its causes joined with ': '."""
        parts = []
        err = self
        while err is not None:
            parts.append(getattr(err, 'message', None) or str(err) or err.__class__.__name__)
            err = err.__cause__
        return ': '.join(parts)

    def to_dict(self):
        return {
            'error': self.error_code,
            'message': self.chain_message(),
            'details': self.details,
            'timestamp': self.timestamp,
        }


# =============================================================================
# DATA INTEGRITY
# =============================================================================
class DataIntegrityError(ReconciliationError):
    """Input data cannot be reconciled without corrupting totals."""
    pass


class UnknownChargeError(DataIntegrityError):
    def __init__(self, charge_name, invoice_number=None):
        super().__init__(
            f"Unknown item type: {charge_name}",
            error_code='UNKNOWN_CHARGE',
            details={'charge_name': charge_name, 'invoice_number': invoice_number},
        )


class UnknownCurrencyError(DataIntegrityError):
    def __init__(self, currency):
        super().__init__(
            f"Unknown currency from billing export: {currency}",
            error_code='UNKNOWN_CURRENCY',
            details={'currency': currency},
        )


class MissingFieldError(DataIntegrityError):
    def __init__(self, field, record_id=None):
        super().__init__(
            f"Missing required field {field}" + (f" on {record_id}" if record_id else ''),
            error_code='MISSING_FIELD',
            details={'field': field, 'record_id': record_id},
        )


class TotalMismatchError(DataIntegrityError):
    """Line items do not add up to the invoice amount plus adjustments."""

    def __init__(self, line_items_total, expected_total, **kwargs):
        details = {'line_items_total': line_items_total, 'expected_total': expected_total}
        details.update(kwargs)
        super().__init__(
            'Total of line items not the total of invoice!',
            error_code='TOTAL_MISMATCH',
            details=details,
        )


class PaymentCaseError(DataIntegrityError):
    """Payments, refunds and credit adjustments cannot be represented."""

    def __init__(self, message, **kwargs):
        super().__init__(message, error_code='UNEXPECTED_PAYMENT_CASE', details=kwargs)


class UnmatchedCreditError(DataIntegrityError):
    def __init__(self, message, credits=None):
        super().__init__(
            message,
            error_code='UNMATCHED_CREDIT',
            details={'credits': credits or []},
        )


class UnsupportedCaseError(DataIntegrityError):
    def __init__(self, message, **kwargs):
        super().__init__(message, error_code='UNSUPPORTED_CASE', details=kwargs)


class InvalidInvoiceError(DataIntegrityError):
    """A reconciled invoice fails the final sanity checks."""

    def __init__(self, message, invoice_number=None):
        super().__init__(
            message,
            error_code='INVALID_INVOICE',
            details={'invoice_number': invoice_number},
        )


# =============================================================================
# CONTEXT WRAPPERS
# =============================================================================
class InvoiceBuildError(ReconciliationError):
    def __init__(self, invoice_number):
        super().__init__(
            f"Couldn't build invoice {invoice_number}",
            error_code='INVOICE_BUILD_FAILED',
            details={'invoice_number': invoice_number},
        )


class AccountReconciliationError(ReconciliationError):
    def __init__(self, account_id, stage='reconcile'):
        super().__init__(
            f"Failed to {stage} account {account_id}",
            error_code='ACCOUNT_RECONCILIATION_FAILED',
            details={'account_id': account_id, 'stage': stage},
        )
