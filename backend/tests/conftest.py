"""
Shared fixtures: in-memory doubles of the quiz access stores.

The doubles implement the same conditional-update semantics as the Mongo
stores (a guarded write either applies completely or returns None), and
yield to the event loop before every operation so concurrent tests
actually interleave.
"""

import asyncio
import copy
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, List, Dict, Any

import pytest
from pymongo.errors import PyMongoError

sys.path.insert(0, str(Path(__file__).parent.parent))

from quiz_access.locks import UserLockRegistry
from quiz_access.models import QuizCatalogEntry, UserAccount, PaymentRecord
from quiz_access.stores import Stores


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _matches(doc: Dict[str, Any], query: Optional[Dict[str, Any]]) -> bool:
    return all(doc.get(field) == value for field, value in (query or {}).items())


class MemoryUserStore:

    def __init__(self):
        self.docs: Dict[str, Dict[str, Any]] = {}
        self.update_calls = 0

    async def find_by_username(self, username):
        await asyncio.sleep(0)
        for doc in self.docs.values():
            if doc["username"] == username:
                return copy.deepcopy(doc)
        return None

    async def find_by_id(self, user_id):
        await asyncio.sleep(0)
        doc = self.docs.get(user_id)
        return copy.deepcopy(doc) if doc else None

    async def update(self, user_id, changes=None, *, expected=None, pull=None, add_to_set=None):
        await asyncio.sleep(0)
        self.update_calls += 1
        doc = self.docs.get(user_id)
        if doc is None or not _matches(doc, expected):
            return None
        doc.update(copy.deepcopy(changes or {}))
        for field, values in (pull or {}).items():
            doc[field] = [v for v in doc.get(field, []) if v not in values]
        for field, values in (add_to_set or {}).items():
            current = doc.setdefault(field, [])
            for value in values:
                if value not in current:
                    current.append(value)
        return copy.deepcopy(doc)

    async def debit_credits(self, user_id, amount, minimum=None):
        await asyncio.sleep(0)
        doc = self.docs.get(user_id)
        if doc is None or doc.get("quiz_credits", 0) < max(amount, minimum or 0):
            return None
        doc["quiz_credits"] -= amount
        return copy.deepcopy(doc)

    async def credit_credits(self, user_id, amount):
        await asyncio.sleep(0)
        doc = self.docs.get(user_id)
        if doc is None:
            return None
        doc["quiz_credits"] = doc.get("quiz_credits", 0) + amount
        return copy.deepcopy(doc)

    async def consume_free_access(self, user_id, min_count=1):
        await asyncio.sleep(0)
        doc = self.docs.get(user_id)
        if doc is None or not doc.get("has_free_access") or doc.get("free_access_count", 0) < min_count:
            return None
        doc["free_access_count"] = max(doc["free_access_count"] - 1, 0)
        doc["has_free_access"] = doc["free_access_count"] > 0
        return copy.deepcopy(doc)

    async def restore_free_access(self, user_id):
        await asyncio.sleep(0)
        doc = self.docs[user_id]
        doc["free_access_count"] = doc.get("free_access_count", 0) + 1
        doc["has_free_access"] = True
        return copy.deepcopy(doc)

    async def attach_payment(self, user_id, payment_id):
        return await self.update(user_id, add_to_set={"payment_ids": [payment_id]})


class MemoryPaymentStore:

    def __init__(self):
        self.docs: Dict[str, Dict[str, Any]] = {}

    async def find_many_by_ids(self, ids, filter=None):
        await asyncio.sleep(0)
        return [copy.deepcopy(self.docs[i]) for i in ids if i in self.docs and _matches(self.docs[i], filter)]

    async def find_latest_by_ids(self, ids):
        await asyncio.sleep(0)
        found = [self.docs[i] for i in ids if i in self.docs]
        if not found:
            return None
        return copy.deepcopy(max(found, key=lambda p: p["created_at"]))

    async def find_by_reference(self, reference):
        await asyncio.sleep(0)
        for doc in self.docs.values():
            if doc.get("reference") == reference:
                return copy.deepcopy(doc)
        return None

    async def mark_success(self, reference, ends_at):
        await asyncio.sleep(0)
        for doc in self.docs.values():
            if doc.get("reference") == reference and doc.get("status") != "success":
                doc["status"] = "success"
                doc["ends_at"] = ends_at
                return copy.deepcopy(doc)
        return None

    async def mark_failed(self, reference):
        await asyncio.sleep(0)
        for doc in self.docs.values():
            if doc.get("reference") == reference and doc.get("status") == "pending":
                doc["status"] = "failed"
                return copy.deepcopy(doc)
        return None


class MemoryPackageStore:

    def __init__(self):
        self.docs: Dict[str, Dict[str, Any]] = {}

    async def find_many_by_ids(self, ids):
        await asyncio.sleep(0)
        return [copy.deepcopy(self.docs[i]) for i in ids if i in self.docs]

    async def find_by_id(self, package_id):
        await asyncio.sleep(0)
        doc = self.docs.get(package_id)
        return copy.deepcopy(doc) if doc else None


class MemoryQuizCatalog:

    def __init__(self):
        self.entries: Dict[str, QuizCatalogEntry] = {}

    async def find_by_id(self, quiz_id):
        await asyncio.sleep(0)
        return self.entries.get(quiz_id)


class MemoryModerationCounter:

    def __init__(self):
        self.questions: List[Dict[str, Any]] = []

    async def count_moderated_by(self, user_id, question_ids):
        await asyncio.sleep(0)
        return sum(
            1 for q in self.questions
            if q["id"] in question_ids and q.get("moderated_by") == user_id
        )


class MemoryLedgerStore:

    def __init__(self):
        self.entries: List[Dict[str, Any]] = []
        self.fail_writes = False

    async def insert(self, entry):
        await asyncio.sleep(0)
        if self.fail_writes:
            raise PyMongoError("ledger unavailable")
        self.entries.append(dict(entry))

    async def find_by_user(self, user_id, limit=50):
        await asyncio.sleep(0)
        mine = [e for e in self.entries if e["user_id"] == user_id]
        return sorted(mine, key=lambda e: e["timestamp"], reverse=True)[:limit]

    async def find_by_request(self, request_id, source):
        await asyncio.sleep(0)
        for entry in self.entries:
            if entry["request_id"] == request_id and entry["source"] == source:
                return dict(entry)
        return None


class MemoryBackend:
    """In-memory stand-in for the quiz access collections."""

    def __init__(self):
        self.users = MemoryUserStore()
        self.payments = MemoryPaymentStore()
        self.packages = MemoryPackageStore()
        self.quizzes = MemoryQuizCatalog()
        self.moderation = MemoryModerationCounter()
        self.ledger = MemoryLedgerStore()
        self.stores = Stores(
            users=self.users,
            payments=self.payments,
            packages=self.packages,
            quizzes=self.quizzes,
            moderation=self.moderation,
            ledger=self.ledger,
        )

    def add_user(self, user_id="u1", **fields):
        doc = {
            "id": user_id,
            "username": fields.pop("username", f"user-{user_id}"),
            "email": f"{user_id}@example.com",
            "role": "student",
            "is_banned": False,
            "is_deleted": False,
            "access_type": "default",
            "is_subscribed": False,
            "quiz_credits": 0,
            "package_ids": [],
            "payment_ids": [],
            "has_free_access": False,
            "free_access_count": 0,
            "courses": [],
        }
        doc.update(fields)
        UserAccount.model_validate(doc)
        self.users.docs[user_id] = doc
        return doc

    def add_package(self, package_id, access, duration=None, courses=None):
        doc = {
            "id": package_id,
            "name": package_id.title(),
            "price": 10,
            "access": access,
            "duration": duration,
            "courses": list(courses or []),
        }
        self.packages.docs[package_id] = doc
        return doc

    def add_payment(self, payment_id, user_id="u1", package_id=None, **fields):
        doc = {
            "id": payment_id,
            "user_id": user_id,
            "package_id": package_id,
            "reference": f"ref-{payment_id}",
            "amount": 0,
            "status": "success",
            "date": NOW,
            "ends_at": None,
            "type": "default",
            "created_at": NOW,
        }
        doc.update(fields)
        PaymentRecord.model_validate(doc)
        self.payments.docs[payment_id] = doc
        return doc

    def add_quiz(self, quiz_id, credit_hours=1, course_id="c1", question_ids=None):
        entry = QuizCatalogEntry(
            id=quiz_id,
            course_id=course_id,
            credit_hours=credit_hours,
            question_ids=list(question_ids or []),
        )
        self.quizzes.entries[quiz_id] = entry
        return entry

    def add_question(self, question_id, moderated_by=None):
        self.moderation.questions.append({"id": question_id, "moderated_by": moderated_by})

    def user(self, user_id="u1"):
        return self.users.docs[user_id]


@pytest.fixture
def backend():
    return MemoryBackend()


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def locks():
    return UserLockRegistry()
