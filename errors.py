"""Error taxonomy shared by the services and rendered by the API"""
from typing import Any, Dict, Optional


class AppError(Exception):
    """Base error carrying the HTTP status it is rendered with."""

    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message}


class Unauthorized(AppError):
    status_code = 401


class InvalidSignature(AppError):
    status_code = 400


class BadRequest(AppError):
    status_code = 400


class AuthLookupError(AppError):
    """The identity provider does not know the user."""

    status_code = 404


class InsufficientCredits(AppError):
    status_code = 403

    def __init__(self, cost: float, balance: Optional[float] = None):
        super().__init__(f"Insufficient credits! This action requires {cost:g} credits.")
        self.cost = cost
        self.balance = balance

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.message, "needPayment": True, "cost": self.cost}
        if self.balance is not None:
            body["credits"] = self.balance
        return body


class PaymentMismatch(AppError):
    status_code = 400


class UpstreamSubmissionFailed(AppError):
    status_code = 502


class UpstreamRateLimited(UpstreamSubmissionFailed):
    status_code = 503

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class UpstreamUnavailable(AppError):
    """A network or 5xx failure talking to Clerk, PayPal or Replicate."""

    status_code = 503


class JobNotFound(AppError):
    """Replicate does not know one of the prediction ids in a job id."""

    status_code = 404
