"""Request-scoped access to the clients built at startup"""
from typing import Optional

from fastapi import Depends, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from errors import Unauthorized
from services.clerk_service import ClerkClient
from services.credit_service import CreditLedger
from services.job_service import JobTracker
from services.payment_service import PaymentReconciler
from services.replicate_service import ModelGateway

security = HTTPBearer(auto_error=False)


def get_clerk(request: Request) -> ClerkClient:
    return request.app.state.clerk


def get_ledger(request: Request) -> CreditLedger:
    return request.app.state.ledger


def get_gateway(request: Request) -> ModelGateway:
    return request.app.state.gateway


def get_tracker(request: Request) -> JobTracker:
    return request.app.state.tracker


def get_reconciler(request: Request) -> PaymentReconciler:
    return request.app.state.reconciler


def get_openai(request: Request):
    return getattr(request.app.state, "openai", None)


async def get_current_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Security(security),
    clerk: ClerkClient = Depends(get_clerk),
) -> str:
    """Verify the Clerk session token from the Bearer header"""
    if credentials is None or not credentials.credentials:
        raise Unauthorized("Unauthorized")
    return await clerk.verify_token(credentials.credentials)
