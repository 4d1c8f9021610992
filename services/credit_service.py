"""Credit ledger stored as Clerk user metadata"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, List

from errors import InsufficientCredits
from services.clerk_service import ClerkClient

logger = logging.getLogger(__name__)

# New accounts start with a free grant until the attribute is first written
DEFAULT_CREDITS = 3.0
CREDITS_KEY = "credits"
PROCESSED_PAYMENTS_KEY = "processedPaymentIds"


@dataclass
class CreditResult:
    added: float
    credits: float
    already_processed: bool = False


def read_credits(user: Dict[str, Any]) -> float:
    value = (user.get("public_metadata") or {}).get(CREDITS_KEY)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return DEFAULT_CREDITS
    return float(value)


def read_processed_payments(user: Dict[str, Any]) -> List[str]:
    value = (user.get("private_metadata") or {}).get(PROCESSED_PAYMENTS_KEY)
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str)]


class CreditLedger:
    """Balance and payment idempotency markers for one Clerk instance.

    Clerk exposes no conditional update, so each operation is a fresh
    read followed by one metadata write. Two requests from the same user
    landing within that window can still race.
    """

    def __init__(self, clerk: ClerkClient):
        self.clerk = clerk

    async def get_balance(self, user_id: str) -> float:
        user = await self.clerk.get_user(user_id)
        return read_credits(user)

    async def try_debit(self, user_id: str, amount: float) -> float:
        """Debit ``amount`` if the current balance covers it; return the new balance."""
        user = await self.clerk.get_user(user_id)
        balance = read_credits(user)
        if balance < amount:
            logger.warning(f"Debit of {amount} refused for user {user_id}: balance {balance}")
            raise InsufficientCredits(amount, balance)

        new_balance = balance - amount
        await self.clerk.update_metadata(user_id, public_metadata={CREDITS_KEY: new_balance})
        logger.info(f"Deducted {amount} credits from user {user_id}. New balance: {new_balance}")
        return new_balance

    async def credit(self, user_id: str, amount: float, idempotency_key: str) -> CreditResult:
        user = await self.clerk.get_user(user_id)
        balance = read_credits(user)
        processed = read_processed_payments(user)

        if idempotency_key in processed:
            logger.info(f"Payment {idempotency_key} already processed for user {user_id}")
            return CreditResult(added=0, credits=balance, already_processed=True)

        new_balance = balance + amount
        # Balance and marker go out in the same request
        await self.clerk.update_metadata(
            user_id,
            public_metadata={CREDITS_KEY: new_balance},
            private_metadata={PROCESSED_PAYMENTS_KEY: processed + [idempotency_key]},
        )
        logger.info(f"Added {amount} credits to user {user_id} for {idempotency_key}. New total: {new_balance}")
        return CreditResult(added=amount, credits=new_balance)
