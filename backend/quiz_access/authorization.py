"""
Access Guard - Pre-execution gate for quiz attempts and AI queries

Enforces, in order:
- Admin bypass, banned and deleted accounts
- Promotional free access (consumed only once access is certain)
- Package reconciliation (always fresh, no cache)
- Moderation bypass for quizzes
- Access-type rules, with atomic credit debits

IMPORTANT: This guard is the ONLY place where quiz and AI access is gated,
and the only place credits are debited for usage. All call sites must go
through it.

Everything after the admin/banned/deleted screen runs inside the user's
critical section (locks.py), so reconciliation, the decision and the debit
for one user never interleave within a process.
"""

import asyncio
import logging
import uuid
from datetime import datetime
from typing import Optional, Dict, Any, Callable

from pymongo.errors import PyMongoError

from .config import (
    CREDIT_HOURS_TO_QUIZ_CREDITS,
    DEFAULT_QUIZ_CREDITS,
    AI_ACCESS,
    QUIZ_ACCESS,
)
from .errors import (
    AccessError,
    UserNotFound,
    QuizNotFound,
    Forbidden,
    SubscriptionRequired,
    InsufficientCredits,
    AccessDenied,
    InvalidAccessType,
    ReconciliationError,
    AccessValidationError,
)
from .ledger import CreditLedger
from .locks import UserLockRegistry, user_locks
from .models import (
    AccessType,
    UserRole,
    AccessDecision,
    QuizCatalogEntry,
    QuizCostEstimate,
    AccessSummary,
)
from .reconciliation import PackageReconciler, as_utc
from .stores import Stores

logger = logging.getLogger(__name__)


def credit_hours_to_quiz_credits(credit_hours: Any) -> int:
    """Credits charged for one attempt at a quiz of `credit_hours` hours."""
    if isinstance(credit_hours, bool):
        return DEFAULT_QUIZ_CREDITS
    try:
        return CREDIT_HOURS_TO_QUIZ_CREDITS.get(credit_hours, DEFAULT_QUIZ_CREDITS)
    except TypeError:
        # unhashable
        return DEFAULT_QUIZ_CREDITS


class AccessGuard:
    """
    Access gate that enforces entitlements and settles credit-funded access.

    Usage:
        guard = AccessGuard(Stores.from_db(db))
        decision = await guard.authorize_quiz_access(username, quiz_id)
        # raises an AccessError subclass when access is refused
    """

    def __init__(
        self,
        stores: Stores,
        locks: Optional[UserLockRegistry] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.stores = stores
        self.users = stores.users
        self.quizzes = stores.quizzes
        self.payments = stores.payments
        self.moderation = stores.moderation
        self.ledger = CreditLedger(stores)
        self.reconciler = PackageReconciler(stores, clock=clock)
        self.locks = locks or user_locks

        # One gate per access type; quiz covers every AccessType member
        self._quiz_gates = {
            AccessType.DURATION: self._quiz_duration_gate,
            AccessType.COURSE: self._quiz_course_gate,
            AccessType.QUIZ: self._quiz_credit_gate,
            AccessType.DEFAULT: self._quiz_default_gate,
        }
        self._ai_gates = {
            AccessType.DURATION: self._ai_duration_gate,
            AccessType.DEFAULT: self._ai_default_gate,
        }

    # ==================== RECONCILIATION ====================

    async def reconcile_packages(self, user_id: str) -> Dict[str, Any]:
        """Refresh a user's packages and access type inside their critical section."""
        async with self.locks.hold(user_id):
            return await self.reconciler.reconcile(user_id)

    # ==================== QUIZ ACCESS ====================

    async def authorize_quiz_access(self, username: str, quiz_id: str) -> AccessDecision:
        """
        Gate one quiz attempt.

        Returns:
            AccessDecision describing how access was granted

        Raises:
            QuizNotFound, UserNotFound, Forbidden, SubscriptionRequired,
            InsufficientCredits, AccessDenied, InvalidAccessType,
            AccessValidationError
        """
        request_id = str(uuid.uuid4())

        try:
            quiz, user = await asyncio.gather(
                self.quizzes.find_by_id(quiz_id),
                self.users.find_by_username(username)
            )
        except PyMongoError as e:
            logger.error(f"Failed to load quiz {quiz_id} / user {username}: {e}")
            raise AccessValidationError(username, e) from e

        if quiz is None:
            raise QuizNotFound()
        if user is None:
            raise UserNotFound()

        admin_decision = self._screen(user, request_id)
        if admin_decision:
            return admin_decision

        async with self.locks.hold(user["id"]):
            try:
                decision = await self._try_free_access(
                    user,
                    QUIZ_ACCESS["free_access_min_count"],
                    action="QUIZ_FREE_ACCESS",
                    request_id=request_id,
                    reference=quiz.id
                )
                if decision:
                    return decision

                user = await self._reconcile_for_access(username, user["id"])

                moderated = await self.moderation.count_moderated_by(user["id"], quiz.question_ids)
                if moderated >= QUIZ_ACCESS["moderation_bypass_threshold"]:
                    logger.info(f"User {username} moderated {moderated} questions of quiz {quiz.id}, bypassing credits")
                    return AccessDecision(
                        via="moderation",
                        remaining_credits=user.get("quiz_credits", 0),
                        request_id=request_id
                    )

                required = credit_hours_to_quiz_credits(quiz.credit_hours)
                access_type = self._access_type(user, resource="quiz")
                gate = self._quiz_gates[access_type]
                return await gate(user, quiz, required, request_id)
            except PyMongoError as e:
                logger.error(f"Quiz access check failed for user {username}: {e}")
                raise AccessValidationError(username, e) from e

    async def _quiz_duration_gate(self, user, quiz: QuizCatalogEntry, required: int, request_id: str):
        if user.get("is_subscribed"):
            return self._granted(user, "subscription", AccessType.DURATION, request_id)
        raise SubscriptionRequired()

    async def _quiz_course_gate(self, user, quiz: QuizCatalogEntry, required: int, request_id: str):
        if quiz.course_id in (user.get("courses") or []):
            return self._granted(user, "course", AccessType.COURSE, request_id)
        return await self._debit(
            user, required, AccessType.COURSE, "QUIZ_ACCESS", request_id, quiz.id,
            on_denied=lambda available: InsufficientCredits(required, available)
        )

    async def _quiz_credit_gate(self, user, quiz: QuizCatalogEntry, required: int, request_id: str):
        return await self._debit(
            user, required, AccessType.QUIZ, "QUIZ_ACCESS", request_id, quiz.id,
            on_denied=lambda available: InsufficientCredits(required, available)
        )

    async def _quiz_default_gate(self, user, quiz: QuizCatalogEntry, required: int, request_id: str):
        # Subscribed without any credit plan
        if user.get("is_subscribed") and (user.get("quiz_credits") or 0) == 0:
            return self._granted(user, "subscription", AccessType.DEFAULT, request_id)
        return await self._debit(
            user, required, AccessType.DEFAULT, "QUIZ_ACCESS", request_id, quiz.id,
            on_denied=lambda available: AccessDenied()
        )

    # ==================== AI ACCESS ====================

    async def authorize_ai_access(self, username: str) -> AccessDecision:
        """
        Gate one AI query.

        Same shape as quiz access, but without a resource: the free path
        needs at least two units left, there is no moderation bypass, and
        credit-funded calls cost a flat amount behind a higher balance floor.
        """
        request_id = str(uuid.uuid4())

        try:
            user = await self.users.find_by_username(username)
        except PyMongoError as e:
            logger.error(f"Failed to load user {username}: {e}")
            raise AccessValidationError(username, e) from e

        if user is None:
            raise UserNotFound()

        admin_decision = self._screen(user, request_id)
        if admin_decision:
            return admin_decision

        async with self.locks.hold(user["id"]):
            try:
                decision = await self._try_free_access(
                    user,
                    AI_ACCESS["free_access_min_count"],
                    action="AI_FREE_ACCESS",
                    request_id=request_id
                )
                if decision:
                    return decision

                user = await self._reconcile_for_access(username, user["id"])

                access_type = self._access_type(user, resource="ai")
                gate = self._ai_gates.get(access_type)
                if gate is None:
                    logger.warning(f"User {username} has access type '{access_type.value}', which has no AI gate")
                    raise InvalidAccessType(access_type.value, resource="ai")
                return await gate(user, request_id)
            except PyMongoError as e:
                logger.error(f"AI access check failed for user {username}: {e}")
                raise AccessValidationError(username, e) from e

    async def _ai_duration_gate(self, user, request_id: str):
        if user.get("is_subscribed"):
            return self._granted(user, "subscription", AccessType.DURATION, request_id)
        raise SubscriptionRequired()

    async def _ai_default_gate(self, user, request_id: str):
        credits = user.get("quiz_credits") or 0
        if user.get("is_subscribed") and credits == 0:
            return self._granted(user, "subscription", AccessType.DEFAULT, request_id)
        if credits < AI_ACCESS["credit_threshold"]:
            raise AccessDenied()
        return await self._debit(
            user, AI_ACCESS["credit_cost"], AccessType.DEFAULT, "AI_ACCESS", request_id, None,
            on_denied=lambda available: AccessDenied(),
            minimum=AI_ACCESS["credit_threshold"]
        )

    # ==================== ESTIMATE / SUMMARY ====================

    async def estimate_quiz_cost(self, username: str, quiz_id: str) -> QuizCostEstimate:
        """
        Credit cost of a quiz for the user. Does NOT deduct any credits.
        Banned and deleted users are refused as they are at the gates.
        """
        quiz, user = await asyncio.gather(
            self.quizzes.find_by_id(quiz_id),
            self.users.find_by_username(username)
        )
        if quiz is None:
            raise QuizNotFound()
        if user is None:
            raise UserNotFound()
        self._reject_blocked(user)

        required = credit_hours_to_quiz_credits(quiz.credit_hours)
        balance = user.get("quiz_credits") or 0
        return QuizCostEstimate(
            quiz_id=quiz.id,
            credit_hours=quiz.credit_hours,
            required_credits=required,
            current_balance=balance,
            sufficient_credits=balance >= required
        )

    async def get_access_summary(self, username: str) -> AccessSummary:
        """Current entitlement state, with the latest expiry among settled payments."""
        user = await self.users.find_by_username(username)
        if user is None or user.get("is_deleted"):
            raise UserNotFound()

        payments = await self.payments.find_many_by_ids(user.get("payment_ids") or [], {"status": "success"})
        expiries = [as_utc(p.get("ends_at")) for p in payments if p.get("ends_at")]

        return AccessSummary(
            username=user["username"],
            access_type=user.get("access_type", AccessType.DEFAULT.value),
            is_subscribed=bool(user.get("is_subscribed")),
            quiz_credits=user.get("quiz_credits") or 0,
            has_free_access=bool(user.get("has_free_access")),
            free_access_count=user.get("free_access_count") or 0,
            courses=user.get("courses") or [],
            package_ids=user.get("package_ids") or [],
            expires_at=max(expiries) if expiries else None
        )

    # ==================== HELPERS ====================

    def _screen(self, user: Dict[str, Any], request_id: str) -> Optional[AccessDecision]:
        """Admin bypass, then banned/deleted refusals. No state change."""
        if user.get("role") == UserRole.ADMIN.value:
            return AccessDecision(
                via="admin",
                remaining_credits=user.get("quiz_credits", 0),
                request_id=request_id
            )
        self._reject_blocked(user)
        return None

    def _reject_blocked(self, user: Dict[str, Any]) -> None:
        if user.get("is_banned"):
            raise Forbidden("banned")
        if user.get("is_deleted"):
            raise UserNotFound()

    async def _try_free_access(
        self,
        user: Dict[str, Any],
        min_count: int,
        action: str,
        request_id: str,
        reference: Optional[str] = None
    ) -> Optional[AccessDecision]:
        if not user.get("has_free_access") or (user.get("free_access_count") or 0) < min_count:
            return None

        updated = await self.ledger.consume_free_access(
            user["id"], min_count, action=action, request_id=request_id, reference=reference
        )
        if updated is None:
            # Another request took the last unit; decide normally
            return None

        return AccessDecision(
            via="free_access",
            remaining_credits=updated.get("quiz_credits", 0),
            request_id=request_id
        )

    async def _reconcile_for_access(self, username: str, user_id: str) -> Dict[str, Any]:
        try:
            return await self.reconciler.reconcile(user_id)
        except (ReconciliationError, UserNotFound) as e:
            logger.error(f"Reconciliation failed while authorizing {username}: {e}")
            raise AccessValidationError(username, e) from e

    def _access_type(self, user: Dict[str, Any], resource: str) -> AccessType:
        raw = user.get("access_type", AccessType.DEFAULT.value)
        try:
            return AccessType(raw)
        except ValueError:
            logger.critical(
                f"Data integrity violation: user {user.get('id')} has access_type {raw!r} "
                f"outside {[member.value for member in AccessType]}"
            )
            raise InvalidAccessType(raw, resource=resource)

    def _granted(self, user, via: str, access_type: AccessType, request_id: str) -> AccessDecision:
        return AccessDecision(
            via=via,
            access_type=access_type,
            remaining_credits=user.get("quiz_credits", 0),
            request_id=request_id
        )

    async def _debit(
        self,
        user: Dict[str, Any],
        amount: float,
        access_type: AccessType,
        action: str,
        request_id: str,
        reference: Optional[str],
        on_denied: Callable[[float], AccessError],
        minimum: Optional[float] = None
    ) -> AccessDecision:
        available = user.get("quiz_credits") or 0
        if available < max(amount, minimum or 0):
            raise on_denied(available)

        updated = await self.ledger.debit(
            user["id"],
            amount,
            action=action,
            request_id=request_id,
            reference=reference,
            details={"access_type": access_type.value},
            minimum=minimum
        )
        if updated is None:
            # Balance changed between read and write
            current = await self.users.find_by_id(user["id"]) or {}
            raise on_denied(current.get("quiz_credits") or 0)

        return AccessDecision(
            via="credits",
            access_type=access_type,
            credits_debited=amount,
            remaining_credits=updated.get("quiz_credits", 0),
            request_id=request_id
        )
