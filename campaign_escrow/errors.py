"""Domain errors raised by the service layer.

Each error is an HTTPException so routers can let it propagate untouched.
The detail body is always ``{"code": ..., "message": ..., **context}`` so
clients can tell exactly which rule failed.
"""

from typing import Any

from fastapi import HTTPException


class DomainError(HTTPException):
    status_code = 422
    code = "DomainError"

    def __init__(self, message: str, **context: Any) -> None:
        self.message = message
        self.context = context
        super().__init__(
            status_code=self.status_code,
            detail={"code": self.code, "message": message, **context},
        )


# --- Validation (422) ---

class InvalidAmount(DomainError):
    code = "InvalidAmount"


class AmountExceedsAvailable(DomainError):
    code = "AmountExceedsAvailable"


class ReasonTooShort(DomainError):
    code = "ReasonTooShort"


class InvalidVotingExtension(DomainError):
    code = "InvalidVotingExtension"


# --- Status conflicts (409) ---

class PendingRequestExists(DomainError):
    status_code = 409
    code = "PendingRequestExists"


class IllegalTransition(DomainError):
    status_code = 409
    code = "IllegalTransition"


class VotingWindowClosed(DomainError):
    status_code = 409
    code = "VotingWindowClosed"


class CampaignNotActive(DomainError):
    status_code = 409
    code = "CampaignNotActive"


class CampaignNotCancelled(DomainError):
    status_code = 409
    code = "CampaignNotCancelled"


# --- Permissions (403) ---

class NotEligibleToVote(DomainError):
    status_code = 403
    code = "NotEligibleToVote"


class Forbidden(DomainError):
    status_code = 403
    code = "Forbidden"


# --- Missing (404) ---

class NotFound(DomainError):
    status_code = 404
    code = "NotFound"


class CampaignNotFound(NotFound):
    code = "CampaignNotFound"


class EscrowNotFound(NotFound):
    code = "EscrowNotFound"


class DonationNotFound(NotFound):
    code = "DonationNotFound"


class RefundNotFound(NotFound):
    code = "RefundNotFound"


class RecoveryCaseNotFound(NotFound):
    code = "RecoveryCaseNotFound"


class TransferNotFound(NotFound):
    code = "TransferNotFound"


# --- External collaborators (502) ---

class PaymentGatewayError(DomainError):
    status_code = 502
    code = "PaymentGatewayError"
