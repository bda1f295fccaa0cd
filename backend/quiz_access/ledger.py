"""
Credit Ledger

Every change to a user's credit balance goes through here:
- Debits for quiz attempts and AI queries (atomic, never negative)
- Credits for settled purchases and grants
- Reversals
- Free-access consumption

Each balance mutation is paired with an immutable entry in the
credit_ledger collection. If the entry cannot be written, the balance
mutation is compensated and the error propagates, so a user is never
left debited without a record.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List

from pymongo.errors import PyMongoError

from .models import CreditLedgerEntry
from .stores import Stores

logger = logging.getLogger(__name__)


class CreditLedger:
    """Balance mutations plus their audit trail."""

    def __init__(self, stores: Stores):
        self.users = stores.users
        self.entries = stores.ledger

    async def debit(
        self,
        user_id: str,
        amount: float,
        action: str,
        request_id: str,
        reference: Optional[str] = None,
        details: Optional[Dict] = None,
        minimum: Optional[float] = None
    ) -> Optional[Dict[str, Any]]:
        """
        Atomically deduct `amount` credits.

        `minimum` is the balance the gate requires, when higher than the cost.

        Returns:
            The updated user, or None if the balance did not cover the amount
            at the moment of the write (including a lost race)
        """
        updated = await self.users.debit_credits(user_id, amount, minimum)
        if updated is None:
            logger.warning(f"Debit of {amount} credits refused for user {user_id} (insufficient balance)")
            return None

        try:
            await self._write_entry(
                user_id=user_id,
                action=action,
                credits=-amount,
                balance_after=updated.get("quiz_credits"),
                source="usage",
                request_id=request_id,
                reference=reference,
                details=details
            )
        except PyMongoError as e:
            logger.error(f"Ledger write failed for user {user_id}, reversing debit of {amount}: {e}")
            await self.users.credit_credits(user_id, amount)
            raise

        logger.info(f"Debited {amount} credits from user {user_id} ({action}), balance {updated.get('quiz_credits')}")
        return updated

    async def credit(
        self,
        user_id: str,
        amount: float,
        source: str,
        request_id: str,
        action: str = "CREDIT_GRANT",
        reference: Optional[str] = None,
        details: Optional[Dict] = None
    ) -> Optional[Dict[str, Any]]:
        """
        Credit `amount` to the user's balance.

        Args:
            user_id: User to credit
            amount: Credits to add
            source: 'purchase', 'grant' or 'reversal'
            request_id: Unique request ID (payment reference for purchases)

        Returns:
            The updated user, or None if the user does not exist
        """
        updated = await self.users.credit_credits(user_id, amount)
        if updated is None:
            logger.warning(f"Credit of {amount} skipped: user {user_id} not found")
            return None

        try:
            await self._write_entry(
                user_id=user_id,
                action=action,
                credits=amount,
                balance_after=updated.get("quiz_credits"),
                source=source,
                request_id=request_id,
                reference=reference,
                details=details
            )
        except PyMongoError as e:
            logger.error(f"Ledger write failed for user {user_id}, reverting credit of {amount}: {e}")
            if await self.users.debit_credits(user_id, amount) is None:
                # The credit was already spent; balance and ledger now disagree
                logger.critical(
                    f"Could not revert credit of {amount} for user {user_id} (request {request_id}); "
                    f"credits remain without a ledger entry"
                )
            raise

        logger.info(f"Credited {amount} credits to user {user_id} (source={source})")
        return updated

    async def reverse(
        self,
        user_id: str,
        amount: float,
        original_request_id: str,
        reason: str
    ) -> Optional[Dict[str, Any]]:
        """Give back a debit (e.g. the downstream AI call failed)."""
        return await self.credit(
            user_id,
            amount,
            source="reversal",
            request_id=str(uuid.uuid4()),
            action="CREDIT_REVERSAL",
            reference=original_request_id,
            details={"reason": reason}
        )

    async def consume_free_access(
        self,
        user_id: str,
        min_count: int,
        action: str,
        request_id: str,
        reference: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        """
        Consume one promotional free-access unit.

        Returns:
            The updated user, or None if fewer than `min_count` units remained
        """
        updated = await self.users.consume_free_access(user_id, min_count)
        if updated is None:
            return None

        try:
            await self._write_entry(
                user_id=user_id,
                action=action,
                credits=0,
                balance_after=updated.get("quiz_credits"),
                source="free_access",
                request_id=request_id,
                reference=reference,
                details={"free_access_remaining": updated.get("free_access_count", 0)}
            )
        except PyMongoError as e:
            logger.error(f"Ledger write failed for user {user_id}, restoring free access unit: {e}")
            await self.users.restore_free_access(user_id)
            raise

        logger.info(
            f"User {user_id} used free access ({action}), "
            f"{updated.get('free_access_count', 0)} remaining"
        )
        return updated

    async def history(self, user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        """Get recent ledger entries for user, newest first."""
        return await self.entries.find_by_user(user_id, limit)

    async def _write_entry(
        self,
        user_id: str,
        action: str,
        credits: float,
        balance_after: Optional[float],
        source: str,
        request_id: str,
        reference: Optional[str] = None,
        details: Optional[Dict] = None
    ):
        """Write an immutable ledger entry."""
        entry = CreditLedgerEntry(
            user_id=user_id,
            action=action,
            credits=credits,
            balance_after=balance_after,
            source=source,
            request_id=request_id,
            reference=reference,
            timestamp=datetime.now(timezone.utc).isoformat(),
            details=details or {}
        )
        await self.entries.insert(entry.model_dump())
