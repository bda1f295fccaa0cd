"""Document and response model validation"""

import sys
from pathlib import Path

import pytest
from pydantic import ValidationError

sys.path.insert(0, str(Path(__file__).parent.parent))

from quiz_access.models import (
    AccessType,
    UserAccount,
    PackageRecord,
    PaymentRecord,
    AccessDecision,
    CreditLedgerEntry,
)
from quiz_access.settlement import PaymentSettlement


class TestDocumentModels:

    def test_user_defaults(self):
        user = UserAccount(id="u1", username="alice", email="a@example.com")

        assert user.access_type == AccessType.DEFAULT
        assert user.quiz_credits == 0
        assert user.courses == []

    def test_user_credits_never_negative(self):
        with pytest.raises(ValidationError):
            UserAccount(id="u1", username="alice", email="a@example.com", quiz_credits=-1)

    def test_user_unknown_access_type_rejected(self):
        with pytest.raises(ValidationError):
            UserAccount(id="u1", username="alice", email="a@example.com", access_type="lifetime")

    def test_package_access_is_closed(self):
        """Packages grant duration, course or quiz access; 'default' is not a package."""
        PackageRecord(id="p1", name="Monthly", price=20, access="duration", duration=30)

        with pytest.raises(ValidationError):
            PackageRecord(id="p2", name="Odd", price=1, access="default")


class TestResponseModels:

    def test_decision_via_is_closed(self):
        with pytest.raises(ValidationError):
            AccessDecision(via="luck", request_id="r1")

    def test_ledger_source_is_closed(self):
        with pytest.raises(ValidationError):
            CreditLedgerEntry(
                user_id="u1",
                action="QUIZ_ACCESS",
                credits=-125,
                source="gift",
                request_id="r1",
                timestamp="2026-03-01T12:00:00+00:00"
            )


class TestStoredDocuments:
    """Documents written by the engine still match the collection schema."""

    @pytest.mark.asyncio
    async def test_settled_payment_and_user_match_schema(self, backend, clock, locks):
        backend.add_user()
        backend.add_package("monthly", "duration", duration=30)
        backend.add_payment("pay1", package_id="monthly", status="pending", type="default", amount=3)

        payment = await PaymentSettlement(backend.stores, locks=locks, clock=clock).settle_payment("ref-pay1")

        assert PaymentRecord.model_validate(payment).status == "success"
        user = UserAccount.model_validate(backend.user())
        assert user.payment_ids == ["pay1"]
        assert user.quiz_credits == 300
        PackageRecord.model_validate(backend.packages.docs["monthly"])
