"""
Unit Tests for the Mongo backend

The collections are mocks; these tests pin the conditional filters that
make each check-then-act a single document update.
"""

import pytest
from unittest.mock import MagicMock
from uuid import uuid4

from pymongo.errors import DuplicateKeyError, PyMongoError

from magic_ledger.errors import InvalidRequestError, PersistenceError
from magic_ledger.models import Child, EntryStatus, Parent, WalletEntryType, WalletLedgerEntry
from magic_ledger.storage import MongoStorage, to_document


@pytest.fixture
def collections():
    return {"parents": MagicMock(), "children": MagicMock()}


@pytest.fixture
def storage(collections):
    return MongoStorage(database=collections)


def vote_debit():
    return WalletLedgerEntry(
        type=WalletEntryType.ADJUSTMENT,
        amount_cents=-100,
        status=EntryStatus.SUCCEEDED,
    )


class TestMongoVoteWrites:
    def test_apply_vote_is_conditional(self, storage, collections):
        parent_id, child_id = uuid4(), uuid4()
        collections["parents"].update_one.return_value.modified_count = 1

        applied = storage.apply_vote(parent_id, child_id, "2026-12-01", 2, vote_debit(), 400)

        assert applied is True
        query, update = collections["parents"].update_one.call_args[0]
        assert query == {
            "_id": str(parent_id),
            f"vote_ledger.{child_id}": {"$ne": "2026-12-01"},
            "wallet_ledger": {"$size": 2},
        }
        assert update["$set"] == {f"vote_ledger.{child_id}": "2026-12-01", "wallet_balance_cents": 400}
        assert update["$push"]["wallet_ledger"]["amount_cents"] == -100

    def test_apply_vote_lost_race(self, storage, collections):
        collections["parents"].update_one.return_value.modified_count = 0

        assert storage.apply_vote(uuid4(), uuid4(), "2026-12-01", 0, vote_debit(), 0) is False

    def test_add_score_clamps_in_the_update(self, storage, collections):
        child = Child(parent_id=uuid4(), display_name="Ava", share_slug="abc123abc123", score365=365)
        collections["children"].find_one_and_update.return_value = to_document(child)

        updated = storage.add_score(child.id, 5, 365)

        assert updated.score365 == 365
        pipeline = collections["children"].find_one_and_update.call_args[0][1]
        assert pipeline[0]["$set"]["score365"]["$max"][0] == 0

    def test_spend_more_than_score_skips_write(self, storage, collections):
        assert storage.spend_score(uuid4(), 2, 3) is False
        collections["children"].update_one.assert_not_called()


class TestMongoAppends:
    def test_push_is_conditional_on_payment_ids(self, storage, collections):
        parent_id = uuid4()
        entry = WalletLedgerEntry(
            type=WalletEntryType.TOP_UP,
            amount_cents=1000,
            stripe_payment_intent_id="pi_1",
            stripe_checkout_session_id="cs_1",
        )
        collections["parents"].update_one.return_value.modified_count = 0

        assert storage.push_wallet_entry(parent_id, entry) is False

        query, _ = collections["parents"].update_one.call_args[0]
        assert query == {
            "_id": str(parent_id),
            "wallet_ledger.stripe_payment_intent_id": {"$ne": "pi_1"},
            "wallet_ledger.stripe_checkout_session_id": {"$ne": "cs_1"},
        }

    def test_push_without_payment_ids(self, storage, collections):
        parent_id = uuid4()
        collections["parents"].update_one.return_value.modified_count = 1

        assert storage.push_wallet_entry(parent_id, vote_debit()) is True

        query, _ = collections["parents"].update_one.call_args[0]
        assert query == {"_id": str(parent_id)}

    def test_duplicate_email_is_invalid_request(self, storage, collections):
        collections["parents"].insert_one.side_effect = DuplicateKeyError("E11000 duplicate key")

        with pytest.raises(InvalidRequestError):
            storage.insert_parent(Parent(user_id="u", email="a@b.co", name="A"))


class TestMongoTransitions:
    def test_donation_settlement_counts_donor(self, storage, collections):
        child_id, entry_id = uuid4(), uuid4()
        collections["children"].update_one.return_value.modified_count = 1

        assert storage.transition_neighbor_entry(child_id, entry_id, EntryStatus.SUCCEEDED, donor_cents=300)

        query, update = collections["children"].update_one.call_args[0]
        assert query["neighbor_ledger"] == {"$elemMatch": {"id": str(entry_id), "status": "PENDING"}}
        assert update["$set"]["neighbor_ledger.$.status"] == "SUCCEEDED"
        assert update["$inc"] == {"donor_totals.count": 1, "donor_totals.total_cents": 300}

    def test_settlement_links_payment_intent(self, storage, collections):
        collections["parents"].update_one.return_value.modified_count = 1

        storage.transition_wallet_entry(uuid4(), uuid4(), EntryStatus.SUCCEEDED, payment_intent_id="pi_9")

        _, update = collections["parents"].update_one.call_args[0]
        assert update["$set"]["wallet_ledger.$.stripe_payment_intent_id"] == "pi_9"

    def test_failed_donation_leaves_totals(self, storage, collections):
        collections["children"].update_one.return_value.modified_count = 1

        storage.transition_neighbor_entry(uuid4(), uuid4(), EntryStatus.FAILED)

        _, update = collections["children"].update_one.call_args[0]
        assert "$inc" not in update


class TestMongoErrors:
    def test_driver_errors_become_persistence_errors(self, storage, collections):
        collections["parents"].find_one.side_effect = PyMongoError("connection refused")

        with pytest.raises(PersistenceError):
            storage.get_parent(uuid4())

    def test_index_setup_failure(self, collections):
        collections["children"].create_index.side_effect = PyMongoError("not authorized")

        with pytest.raises(PersistenceError):
            MongoStorage(database=collections)
