"""
Quiz Access Stores

Thin Motor wrappers over the collections the access engine reads and writes.
Services never touch `db.<collection>` directly; they go through these
stores so every mutation that must be atomic is a single conditional
document update.

All reads project out `_id` (documents are keyed by their string `id`).
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any, Iterable

from pymongo import ReturnDocument

from .models import QuizCatalogEntry


USER_PROJECTION = {"_id": 0, "password": 0}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _unique(values: Iterable[str]) -> List[str]:
    seen = set()
    out = []
    for value in values:
        if value not in seen:
            seen.add(value)
            out.append(value)
    return out


class UserStore:
    """users collection"""

    def __init__(self, db):
        self.db = db

    async def find_by_username(self, username: str) -> Optional[Dict[str, Any]]:
        return await self.db.users.find_one({"username": username}, USER_PROJECTION)

    async def find_by_id(self, user_id: str) -> Optional[Dict[str, Any]]:
        return await self.db.users.find_one({"id": user_id}, USER_PROJECTION)

    async def update(
        self,
        user_id: str,
        changes: Optional[Dict[str, Any]] = None,
        *,
        expected: Optional[Dict[str, Any]] = None,
        pull: Optional[Dict[str, List[str]]] = None,
        add_to_set: Optional[Dict[str, List[str]]] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Apply a single atomic document update.

        Args:
            user_id: User to update
            changes: Fields to $set
            expected: Extra filter fields; the update only applies if the
                stored document still matches them
            pull: field -> values removed with $pull/$in
            add_to_set: field -> values added with $addToSet/$each

        Returns:
            The updated user, or None if no document matched
        """
        query = {"id": user_id}
        if expected:
            query.update(expected)

        update: Dict[str, Any] = {"$set": {**(changes or {}), "updated_at": _now_iso()}}
        if pull:
            update["$pull"] = {field: {"$in": list(values)} for field, values in pull.items()}
        if add_to_set:
            update["$addToSet"] = {field: {"$each": list(values)} for field, values in add_to_set.items()}

        return await self.db.users.find_one_and_update(
            query,
            update,
            projection=USER_PROJECTION,
            return_document=ReturnDocument.AFTER
        )

    async def debit_credits(
        self,
        user_id: str,
        amount: float,
        minimum: Optional[float] = None
    ) -> Optional[Dict[str, Any]]:
        """
        Atomically deduct credits.

        Only matches when the balance covers the amount (or `minimum`, when
        the gate requires a higher floor than the cost), so concurrent
        debits can never drive `quiz_credits` negative. Returns None when
        the balance is insufficient (or the user is gone).
        """
        floor = max(amount, minimum or 0)
        return await self.db.users.find_one_and_update(
            {"id": user_id, "quiz_credits": {"$gte": floor}},
            {
                "$inc": {"quiz_credits": -amount},
                "$set": {"updated_at": _now_iso()}
            },
            projection=USER_PROJECTION,
            return_document=ReturnDocument.AFTER
        )

    async def credit_credits(self, user_id: str, amount: float) -> Optional[Dict[str, Any]]:
        return await self.db.users.find_one_and_update(
            {"id": user_id},
            {
                "$inc": {"quiz_credits": amount},
                "$set": {"updated_at": _now_iso()}
            },
            projection=USER_PROJECTION,
            return_document=ReturnDocument.AFTER
        )

    async def consume_free_access(self, user_id: str, min_count: int = 1) -> Optional[Dict[str, Any]]:
        """
        Consume one free-access unit if at least `min_count` remain.

        Decrement (clamped at 0) and the `has_free_access` recompute happen
        in one pipeline update, so the two fields can never disagree.
        """
        return await self.db.users.find_one_and_update(
            {
                "id": user_id,
                "has_free_access": True,
                "free_access_count": {"$gte": min_count}
            },
            [
                {"$set": {
                    "free_access_count": {"$max": [{"$subtract": ["$free_access_count", 1]}, 0]},
                    "updated_at": _now_iso()
                }},
                {"$set": {"has_free_access": {"$gt": ["$free_access_count", 0]}}}
            ],
            projection=USER_PROJECTION,
            return_document=ReturnDocument.AFTER
        )

    async def restore_free_access(self, user_id: str) -> Optional[Dict[str, Any]]:
        """Give back one free-access unit (compensates a consume whose ledger write failed)."""
        return await self.db.users.find_one_and_update(
            {"id": user_id},
            {
                "$inc": {"free_access_count": 1},
                "$set": {"has_free_access": True, "updated_at": _now_iso()}
            },
            projection=USER_PROJECTION,
            return_document=ReturnDocument.AFTER
        )

    async def attach_payment(self, user_id: str, payment_id: str) -> Optional[Dict[str, Any]]:
        return await self.update(user_id, add_to_set={"payment_ids": [payment_id]})


class PaymentStore:
    """payments collection"""

    def __init__(self, db):
        self.db = db

    async def find_many_by_ids(
        self,
        ids: List[str],
        filter: Optional[Dict[str, Any]] = None
    ) -> List[Dict[str, Any]]:
        if not ids:
            return []
        query = {"id": {"$in": list(ids)}}
        if filter:
            query.update(filter)
        cursor = self.db.payments.find(query, {"_id": 0})
        return await cursor.to_list(length=None)

    async def find_latest_by_ids(self, ids: List[str]) -> Optional[Dict[str, Any]]:
        """Most recently created payment among `ids`."""
        if not ids:
            return None
        cursor = self.db.payments.find(
            {"id": {"$in": list(ids)}},
            {"_id": 0}
        ).sort("created_at", -1).limit(1)
        docs = await cursor.to_list(length=1)
        return docs[0] if docs else None

    async def find_by_reference(self, reference: str) -> Optional[Dict[str, Any]]:
        return await self.db.payments.find_one({"reference": reference}, {"_id": 0})

    async def mark_success(self, reference: str, ends_at: Optional[datetime]) -> Optional[Dict[str, Any]]:
        """Claim a payment for settlement. Returns None if it was already settled."""
        return await self.db.payments.find_one_and_update(
            {"reference": reference, "status": {"$ne": "success"}},
            {"$set": {"status": "success", "ends_at": ends_at, "updated_at": _now_iso()}},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER
        )

    async def mark_failed(self, reference: str) -> Optional[Dict[str, Any]]:
        return await self.db.payments.find_one_and_update(
            {"reference": reference, "status": "pending"},
            {"$set": {"status": "failed", "updated_at": _now_iso()}},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER
        )


class PackageStore:
    """packages collection"""

    def __init__(self, db):
        self.db = db

    async def find_many_by_ids(self, ids: List[str]) -> List[Dict[str, Any]]:
        if not ids:
            return []
        cursor = self.db.packages.find({"id": {"$in": list(ids)}}, {"_id": 0})
        return await cursor.to_list(length=None)

    async def find_by_id(self, package_id: str) -> Optional[Dict[str, Any]]:
        return await self.db.packages.find_one({"id": package_id}, {"_id": 0})


class QuizCatalog:
    """quizzes collection, flattened to what the access gate needs"""

    def __init__(self, db):
        self.db = db

    async def find_by_id(self, quiz_id: str) -> Optional[QuizCatalogEntry]:
        doc = await self.db.quizzes.find_one(
            {"id": quiz_id},
            {"_id": 0, "id": 1, "course_id": 1, "credit_hours": 1, "quiz_questions": 1}
        )
        if not doc:
            return None

        question_ids = _unique(
            question_id
            for group in doc.get("quiz_questions") or []
            for question_id in group.get("questions") or []
        )
        return QuizCatalogEntry(
            id=doc["id"],
            course_id=doc["course_id"],
            credit_hours=doc.get("credit_hours"),
            question_ids=question_ids
        )


class QuestionModerationCounter:
    """Counts moderation attributions in the questions collection"""

    def __init__(self, db):
        self.db = db

    async def count_moderated_by(self, user_id: str, question_ids: List[str]) -> int:
        if not question_ids:
            return 0
        return await self.db.questions.count_documents({
            "id": {"$in": list(question_ids)},
            "moderated_by": user_id
        })


class LedgerStore:
    """credit_ledger collection (append-only)"""

    def __init__(self, db):
        self.db = db

    async def insert(self, entry: Dict[str, Any]) -> None:
        # insert_one adds _id to the dict it is given
        await self.db.credit_ledger.insert_one(dict(entry))

    async def find_by_user(self, user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        cursor = self.db.credit_ledger.find(
            {"user_id": user_id},
            {"_id": 0}
        ).sort("timestamp", -1).limit(limit)
        return await cursor.to_list(length=limit)

    async def find_by_request(self, request_id: str, source: str) -> Optional[Dict[str, Any]]:
        return await self.db.credit_ledger.find_one(
            {"request_id": request_id, "source": source},
            {"_id": 0}
        )


@dataclass
class Stores:
    """The collaborators the access engine depends on."""

    users: UserStore
    payments: PaymentStore
    packages: PackageStore
    quizzes: QuizCatalog
    moderation: QuestionModerationCounter
    ledger: LedgerStore

    @classmethod
    def from_db(cls, db) -> "Stores":
        return cls(
            users=UserStore(db),
            payments=PaymentStore(db),
            packages=PackageStore(db),
            quizzes=QuizCatalog(db),
            moderation=QuestionModerationCounter(db),
            ledger=LedgerStore(db),
        )
