"""
Quiz access database bootstrap

- environment guard
- dry-run makes no writes
- existing indexes are skipped
- purchase credits are unique per payment reference
"""

import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
from pymongo.errors import OperationFailure

sys.path.insert(0, str(Path(__file__).parent.parent))

from quiz_access import db_init


@pytest.fixture
def mock_db():
    db = MagicMock()
    db.quiz_access_meta.update_one = AsyncMock()

    collection = MagicMock()
    collection.index_information = AsyncMock(return_value={"_id_": {}, "idx_id_unique": {}})
    collection.create_index = AsyncMock()
    db.__getitem__.return_value = collection
    db.collection = collection
    return db


class TestEnvironmentGuard:

    def test_development_allowed(self, monkeypatch):
        monkeypatch.delenv("APP_ENV", raising=False)

        allowed, message = db_init.check_environment()

        assert allowed is True
        assert "development" in message

    def test_production_requires_confirmation(self, monkeypatch):
        monkeypatch.setenv("APP_ENV", "production")
        monkeypatch.delenv("QUIZ_ACCESS_INIT_CONFIRM", raising=False)

        allowed, message = db_init.check_environment()

        assert allowed is False
        assert "QUIZ_ACCESS_INIT_CONFIRM=YES" in message

    def test_production_confirmed(self, monkeypatch):
        monkeypatch.setenv("APP_ENV", "production")
        monkeypatch.setenv("QUIZ_ACCESS_INIT_CONFIRM", "YES")

        allowed, _ = db_init.check_environment()

        assert allowed is True

    @pytest.mark.asyncio
    async def test_blocked_run_exits_nonzero(self, monkeypatch):
        monkeypatch.setenv("APP_ENV", "production")
        monkeypatch.setenv("QUIZ_ACCESS_INIT_CONFIRM", "no")

        assert await db_init.run_init(dry_run=True) == 1


class TestApplySchema:

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(self, mock_db):
        lines = await db_init.apply_schema(mock_db, dry_run=True)

        mock_db.collection.create_index.assert_not_awaited()
        mock_db.quiz_access_meta.update_one.assert_not_awaited()
        assert "  [DRY-RUN] Would create credit_ledger.idx_purchase_request_unique" in lines
        assert "  [SKIP] users.idx_id_unique" in lines

    @pytest.mark.asyncio
    async def test_creates_missing_only(self, mock_db):
        await db_init.apply_schema(mock_db)

        index_names = {call.kwargs["name"] for call in mock_db.collection.create_index.await_args_list}
        assert "idx_id_unique" not in index_names
        assert "idx_reference_unique" in index_names
        assert "idx_purchase_request_unique" in index_names
        mock_db.quiz_access_meta.update_one.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_index_race_is_skipped(self, mock_db):
        mock_db.collection.create_index.side_effect = OperationFailure("Index already exists with different name")

        result = await db_init.create_index_if_not_exists(
            mock_db, "payments", [("reference", 1)], {"name": "idx_reference_unique"}
        )

        assert result.endswith("(race)")

    @pytest.mark.asyncio
    async def test_other_index_errors_propagate(self, mock_db):
        mock_db.collection.create_index.side_effect = OperationFailure("bad key")

        with pytest.raises(OperationFailure):
            await db_init.create_index_if_not_exists(
                mock_db, "payments", [("reference", 1)], {"name": "idx_reference_unique"}
            )

    def test_reference_index_is_unique_and_sparse(self):
        options = next(
            opts for coll, spec, opts in db_init.REQUIRED_INDEXES
            if coll == "payments" and spec == [("reference", 1)]
        )
        assert options["unique"] is True
        assert options["sparse"] is True

    def test_purchase_credit_unique_per_reference(self):
        """Only purchase entries are unique per request_id; usage entries may repeat it."""
        options = next(
            opts for coll, spec, opts in db_init.REQUIRED_INDEXES
            if opts["name"] == "idx_purchase_request_unique"
        )
        assert options["unique"] is True
        assert options["partialFilterExpression"] == {"source": "purchase"}
