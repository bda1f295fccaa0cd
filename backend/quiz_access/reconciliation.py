"""
Package Reconciliation

Recomputes a user's live entitlement state from their payment history.
Called synchronously before every access decision; there is no cache and
no background expiry sweep.

Rules:
- Admins are never reconciled
- Only successful payments count; a payment is valid while `ends_at` is
  unset or in the future
- Duration packages are live while payment date + duration days is in the
  future; course and quiz packages stay live while their payment is valid
- Courses granted by a live package are unioned into `courses` and never
  removed, even after the package expires
- Expired payment ids are pulled from `payment_ids`

The whole result is written as ONE conditional update guarded on the
`quiz_credits` and `payment_ids` values it was computed from. A concurrent
writer makes the guard miss, and the reconciliation is recomputed.
"""

import copy
import logging
from datetime import datetime, timezone, timedelta
from typing import Optional, Dict, Any, List, Callable

from pymongo.errors import PyMongoError

from .config import RECONCILE_MAX_ATTEMPTS
from .errors import UserNotFound, ReconciliationError
from .models import AccessType, UserRole
from .stores import Stores

logger = logging.getLogger(__name__)

ACCESS_TYPE_VALUES = {member.value for member in AccessType}

# Payment types that are not access types themselves
PAYMENT_TYPE_ACCESS = {
    "credits": AccessType.QUIZ.value,
}

RESET_STATE = {
    "is_subscribed": False,
    "access_type": AccessType.DEFAULT.value,
    "has_free_access": False,
    "free_access_count": 0,
    "quiz_credits": 0,
    "package_ids": [],
    "payment_ids": [],
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Any) -> Optional[datetime]:
    """Normalize a stored date (datetime or ISO string) to an aware UTC datetime."""
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace('Z', '+00:00'))
    if value.tzinfo is None:
        # Motor hands back naive UTC datetimes
        return value.replace(tzinfo=timezone.utc)
    return value


class PackageReconciler:
    """Recomputes packages, courses and access type for one user at a time."""

    def __init__(self, stores: Stores, clock: Optional[Callable[[], datetime]] = None):
        self.users = stores.users
        self.payments = stores.payments
        self.packages = stores.packages
        self.clock = clock or utcnow

    async def reconcile(self, user_id: str) -> Dict[str, Any]:
        """
        Refresh a user's entitlement state from their payments.

        Callers that also decide access must hold the user's lock
        (see AccessGuard.reconcile_packages).

        Returns:
            The updated user document

        Raises:
            UserNotFound: the user does not exist
            ReconciliationError: persistence failed or kept losing races
        """
        for attempt in range(1, RECONCILE_MAX_ATTEMPTS + 1):
            try:
                user = await self.users.find_by_id(user_id)
                if not user:
                    raise UserNotFound()

                if user.get("role") == UserRole.ADMIN.value:
                    return user

                updated = await self._apply(user)
            except PyMongoError as e:
                logger.error(f"Reconciliation failed for user {user_id}: {e}")
                raise ReconciliationError(user_id, e) from e

            if updated is not None:
                return updated

            logger.warning(f"Reconciliation for user {user_id} lost a race (attempt {attempt}), retrying")

        raise ReconciliationError(user_id)

    async def _apply(self, user: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        now = self.clock()
        user_id = user["id"]
        payment_ids = list(user.get("payment_ids") or [])

        payments = await self.payments.find_many_by_ids(payment_ids, {"status": "success"})

        valid = []
        expired = []
        for payment in payments:
            ends_at = as_utc(payment.get("ends_at"))
            if ends_at is None or ends_at > now:
                valid.append(payment)
            else:
                expired.append(payment)

        # Latest valid purchase date per package
        purchased_at: Dict[str, Optional[datetime]] = {}
        for payment in valid:
            package_id = payment.get("package_id")
            if not package_id:
                continue
            date = as_utc(payment.get("date"))
            current = purchased_at.get(package_id)
            if package_id not in purchased_at or (date and (current is None or date > current)):
                purchased_at[package_id] = date

        packages = await self.packages.find_many_by_ids(list(purchased_at))
        packages_by_id = {package["id"]: package for package in packages}
        live = [
            package for package in packages
            if self._is_live(package, purchased_at.get(package["id"]), now)
        ]

        live_ids = [package["id"] for package in live]
        expired_ids = {payment["id"] for payment in expired}
        remaining_payment_ids = [pid for pid in payment_ids if pid not in expired_ids]

        existing_courses = set(user.get("courses") or [])
        new_courses: List[str] = []
        for package in live:
            for course in package.get("courses") or []:
                if course not in existing_courses and course not in new_courses:
                    new_courses.append(course)

        # Guard on exactly what the status decision reads
        expected = {
            "quiz_credits": user.get("quiz_credits"),
            "payment_ids": user.get("payment_ids"),
        }

        if valid and live:
            latest = max(valid, key=lambda p: as_utc(p.get("date")) or datetime.min.replace(tzinfo=timezone.utc))
            package = packages_by_id.get(latest.get("package_id")) or {}
            access = package.get("access")
            changes = {
                "package_ids": live_ids,
                "is_subscribed": True,
                "access_type": access if access in ACCESS_TYPE_VALUES else AccessType.DURATION.value,
            }
        elif remaining_payment_ids:
            latest = await self.payments.find_latest_by_ids(remaining_payment_ids)
            changes = {
                "package_ids": live_ids,
                "is_subscribed": True,
                "access_type": self._payment_access_type(latest),
            }
        elif (user.get("quiz_credits") or 0) > 0:
            changes = {
                "package_ids": live_ids,
                "is_subscribed": False,
                "access_type": AccessType.QUIZ.value,
            }
        else:
            logger.info(f"User {user_id} has no payments or credits left, resetting entitlements")
            return await self.users.update(user_id, copy.deepcopy(RESET_STATE), expected=expected)

        if expired_ids:
            logger.info(f"Pruning {len(expired_ids)} expired payment(s) for user {user_id}")

        return await self.users.update(
            user_id,
            changes,
            expected=expected,
            pull={"payment_ids": sorted(expired_ids)} if expired_ids else None,
            add_to_set={"courses": new_courses} if new_courses else None
        )

    @staticmethod
    def _is_live(package: Dict[str, Any], purchased_at: Optional[datetime], now: datetime) -> bool:
        duration = package.get("duration")
        if package.get("access") == AccessType.DURATION.value and duration:
            if purchased_at is None:
                return False
            return purchased_at + timedelta(days=duration) > now
        return True

    @staticmethod
    def _payment_access_type(payment: Optional[Dict[str, Any]]) -> str:
        payment_type = (payment or {}).get("type")
        if payment_type in ACCESS_TYPE_VALUES:
            return payment_type
        return PAYMENT_TYPE_ACCESS.get(payment_type, AccessType.DEFAULT.value)
