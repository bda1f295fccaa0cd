"""
Payment Settlement

Applies a payment the gateway has confirmed:
1. Claim the payment (pending/failed -> success) with a conditional update
2. Compute ends_at from the package duration
3. Attach the payment to the user's payment_ids
4. Credit purchased quiz credits through the ledger (credit-type payments)

Idempotent per payment reference. Steps 3 and 4 run again on every
settlement of the reference: the attach is an $addToSet, and the credit is
skipped once a `purchase` ledger entry carries the reference as its
request_id. A settlement that failed after the claim is therefore finished
by the next one.
Package state (package_ids, access_type, is_subscribed) is NOT written
here; the next reconciliation derives it from the new payment.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, Callable

from pymongo.errors import DuplicateKeyError, PyMongoError

from .config import CREDITS_PER_CURRENCY_UNIT, CREDIT_PAYMENT_TYPES
from .errors import PaymentNotFound, SettlementError
from .ledger import CreditLedger
from .locks import UserLockRegistry, user_locks
from .reconciliation import utcnow
from .stores import Stores

logger = logging.getLogger(__name__)


class PaymentSettlement:
    """Settles and fails payments by gateway reference."""

    def __init__(
        self,
        stores: Stores,
        locks: Optional[UserLockRegistry] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.users = stores.users
        self.payments = stores.payments
        self.packages = stores.packages
        self.entries = stores.ledger
        self.ledger = CreditLedger(stores)
        self.locks = locks or user_locks
        self.clock = clock or utcnow

    async def settle_payment(self, reference: str) -> Dict[str, Any]:
        """
        Mark a payment successful and grant what it paid for.

        Safe to retry: a payment that is already `success` still gets any
        step a failed earlier attempt did not finish.

        Returns:
            The settled payment document

        Raises:
            PaymentNotFound: no payment has this reference
            SettlementError: persistence failed
        """
        try:
            payment = await self.payments.find_by_reference(reference)
            if not payment:
                raise PaymentNotFound()

            if payment.get("status") == "success":
                logger.info(f"Payment {reference} already settled, checking it was applied")
            else:
                ends_at = await self._ends_at(payment)
                claimed = await self.payments.mark_success(reference, ends_at)
                if claimed is None:
                    logger.info(f"Payment {reference} was settled by another request")
                    claimed = await self.payments.find_by_reference(reference) or payment
                payment = claimed

            async with self.locks.hold(payment["user_id"]):
                await self._apply(payment)
        except PyMongoError as e:
            logger.error(f"Settlement of payment {reference} failed: {e}")
            raise SettlementError(reference, e) from e

        logger.info(f"Settled payment {reference} for user {payment['user_id']}")
        return payment

    async def _apply(self, payment: Dict[str, Any]) -> None:
        """Attach the payment to its user and credit purchased credits, skipping what is already done."""
        user_id = payment["user_id"]
        reference = payment["reference"]
        await self.users.attach_payment(user_id, payment["id"])

        if payment.get("type", "default") not in CREDIT_PAYMENT_TYPES:
            return
        credits = (payment.get("amount") or 0) * CREDITS_PER_CURRENCY_UNIT
        if credits <= 0:
            return

        if await self.entries.find_by_request(reference, source="purchase"):
            logger.info(f"Credits for payment {reference} already granted")
            return

        try:
            await self.ledger.credit(
                user_id,
                credits,
                source="purchase",
                request_id=reference,
                action="PAYMENT_CREDIT",
                reference=payment["id"],
                details={"amount": payment.get("amount"), "package_id": payment.get("package_id")}
            )
        except DuplicateKeyError:
            # Another process wrote the purchase entry first; ours was reverted
            logger.info(f"Credits for payment {reference} granted by another process")

    async def fail_payment(self, reference: str) -> Dict[str, Any]:
        """Mark a pending payment failed. Settled payments are left alone."""
        try:
            payment = await self.payments.find_by_reference(reference)
            if not payment:
                raise PaymentNotFound()

            if payment.get("status") != "pending":
                logger.warning(f"Payment {reference} is {payment.get('status')}, not marking failed")
                return payment

            failed = await self.payments.mark_failed(reference)
        except PyMongoError as e:
            logger.error(f"Failing payment {reference} failed: {e}")
            raise SettlementError(reference, e) from e

        logger.info(f"Payment {reference} marked failed")
        return failed or payment

    async def _ends_at(self, payment: Dict[str, Any]) -> Optional[datetime]:
        package_id = payment.get("package_id")
        if not package_id:
            return None
        package = await self.packages.find_by_id(package_id)
        duration = (package or {}).get("duration") or 0
        if duration <= 0:
            return None
        return self.clock() + timedelta(days=duration)
