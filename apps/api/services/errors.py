"""Ledger and payment error taxonomy.

Every error carries the HTTP status and the user-facing detail it maps to;
``main.py`` registers a single handler for the base class.
"""

from __future__ import annotations

from typing import Optional


class LedgerError(Exception):
    status_code = 400
    code = "ledger_error"
    default_detail = "The credit operation could not be completed."

    def __init__(self, detail: Optional[str] = None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class AccountNotFound(LedgerError):
    status_code = 404
    code = "account_not_found"
    default_detail = "Account not found."


class InsufficientBalance(LedgerError):
    status_code = 402
    code = "insufficient_balance"

    def __init__(self, required: int, available: int):
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient credits. Required: {required}, available: {available}. "
            "Purchase more credits or contact your trainer."
        )


class ReferenceNotFound(LedgerError):
    status_code = 404
    code = "reference_not_found"
    default_detail = "A referenced record no longer exists."


class ConcurrentModification(LedgerError):
    status_code = 409
    code = "concurrent_modification"
    default_detail = "The account was modified concurrently."


class TransientFailure(LedgerError):
    status_code = 503
    code = "transient_failure"
    default_detail = "The operation could not be completed right now. Please try again."


class SignatureInvalid(LedgerError):
    status_code = 400
    code = "signature_invalid"
    default_detail = "Webhook signature verification failed."


class InvalidWebhookPayload(LedgerError):
    status_code = 400
    code = "invalid_webhook_payload"
    default_detail = "Webhook payload is malformed or missing metadata."


class InvalidLedgerOperation(LedgerError):
    status_code = 422
    code = "invalid_operation"


class SubmissionAlreadyEvaluated(LedgerError):
    status_code = 409
    code = "already_evaluated"
    default_detail = "An evaluation has already been requested for this submission."


class PermissionDenied(LedgerError):
    status_code = 403
    code = "forbidden"
    default_detail = "You do not have access to this record."


class PaymentsNotConfigured(LedgerError):
    status_code = 503
    code = "payments_not_configured"
    default_detail = "Online payments are not configured."
