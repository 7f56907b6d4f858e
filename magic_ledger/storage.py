"""
Document storage for the Parent and Child aggregates.

Both backends keep each aggregate as a single document and expose only
single-document operations. Every method that checks state before changing
it does so in one conditional write, so two requests racing on the same
document cannot both pass the check.
"""

import logging
import threading
from typing import Optional
from uuid import UUID

from pymongo import MongoClient, ASCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from .errors import InvalidRequestError, PersistenceError
from .models import Parent, Child, WalletLedgerEntry, NeighborLedgerEntry, EntryStatus, utcnow

logger = logging.getLogger("magic_ledger.storage")


def to_document(model) -> dict:
    doc = model.model_dump(mode="json")
    doc["_id"] = doc.pop("id")
    return doc


def from_document(cls, doc: Optional[dict]):
    if doc is None:
        return None
    data = dict(doc)
    data["id"] = data.pop("_id")
    return cls.model_validate(data)


def entry_document(entry) -> dict:
    return entry.model_dump(mode="json")


def correlation_ids(entry) -> list[str]:
    return [cid for cid in (entry.stripe_payment_intent_id, entry.stripe_checkout_session_id) if cid]


class DocumentStorage:
    """Operations the ledger service needs from a document store."""

    # Parents
    def insert_parent(self, parent: Parent) -> None:
        raise NotImplementedError

    def get_parent(self, parent_id: UUID) -> Optional[Parent]:
        raise NotImplementedError

    def find_parent_by_user(self, user_id: str) -> Optional[Parent]:
        raise NotImplementedError

    def find_parent_by_correlation(self, correlation_id: str) -> Optional[Parent]:
        raise NotImplementedError

    def link_child(self, parent_id: UUID, child_id: UUID) -> None:
        raise NotImplementedError

    def push_wallet_entry(self, parent_id: UUID, entry: WalletLedgerEntry) -> bool:
        """Append `entry`. False if the parent is missing or already holds an
        entry with one of its payment ids."""
        raise NotImplementedError

    def set_wallet_balance(self, parent_id: UUID, balance_cents: int) -> None:
        raise NotImplementedError

    def transition_wallet_entry(
        self,
        parent_id: UUID,
        entry_id: UUID,
        status: EntryStatus,
        payment_intent_id: Optional[str] = None,
    ) -> bool:
        """Move a PENDING entry to `status`. False if it is no longer pending.

        A `payment_intent_id` is stored on an entry that does not have one yet.
        """
        raise NotImplementedError

    def set_vote_if_absent(self, parent_id: UUID, child_id: UUID, today: str) -> bool:
        raise NotImplementedError

    def apply_vote(
        self,
        parent_id: UUID,
        child_id: UUID,
        today: str,
        expected_ledger_size: int,
        entry: WalletLedgerEntry,
        new_balance_cents: int,
    ) -> bool:
        """Record the vote, push the debit and store the new balance.

        Applies only while the child has no vote for `today` and the ledger
        still holds `expected_ledger_size` entries.
        """
        raise NotImplementedError

    def compensate_vote(self, parent_id: UUID, child_id: UUID, today: str, entry: WalletLedgerEntry) -> bool:
        """Reopen the vote gate for `today` and push the refund entry."""
        raise NotImplementedError

    # Children
    def insert_child(self, child: Child) -> None:
        raise NotImplementedError

    def get_child(self, child_id: UUID) -> Optional[Child]:
        raise NotImplementedError

    def find_child_by_slug(self, share_slug: str) -> Optional[Child]:
        raise NotImplementedError

    def find_child_by_correlation(self, correlation_id: str) -> Optional[Child]:
        raise NotImplementedError

    def push_neighbor_entry(self, child_id: UUID, entry: NeighborLedgerEntry) -> bool:
        raise NotImplementedError

    def set_neighbor_balance(self, child_id: UUID, balance_cents: int) -> None:
        raise NotImplementedError

    def transition_neighbor_entry(
        self,
        child_id: UUID,
        entry_id: UUID,
        status: EntryStatus,
        donor_cents: Optional[int] = None,
        payment_intent_id: Optional[str] = None,
    ) -> bool:
        """Like transition_wallet_entry, also counting a donor when `donor_cents` is set."""
        raise NotImplementedError

    def add_score(self, child_id: UUID, delta: int, max_score: int) -> Optional[Child]:
        """Add `delta` to score365, clamped to [0, max_score]. Returns the updated child."""
        raise NotImplementedError

    def spend_score(self, child_id: UUID, expected_score: int, points: int) -> bool:
        raise NotImplementedError


class InMemoryStorage(DocumentStorage):
    def __init__(self):
        self.parents: dict[str, dict] = {}
        self.children: dict[str, dict] = {}
        self._lock = threading.RLock()

    @staticmethod
    def _pending_index(entries: list[dict], entry_id: UUID) -> Optional[int]:
        for index, entry in enumerate(entries):
            if entry["id"] == str(entry_id) and entry["status"] == EntryStatus.PENDING.value:
                return index
        return None

    @staticmethod
    def _matches(entry: dict, correlation_id: str) -> bool:
        return correlation_id in (entry.get("stripe_payment_intent_id"), entry.get("stripe_checkout_session_id"))

    def _push_unique(self, entries: list[dict], entry) -> bool:
        for correlation_id in correlation_ids(entry):
            if any(self._matches(e, correlation_id) for e in entries):
                return False
        entries.append(entry_document(entry))
        return True

    @staticmethod
    def _settle(entry: dict, status: EntryStatus, payment_intent_id: Optional[str]) -> None:
        entry["status"] = status.value
        entry["updated_at"] = utcnow().isoformat()
        if payment_intent_id and not entry.get("stripe_payment_intent_id"):
            entry["stripe_payment_intent_id"] = payment_intent_id

    def insert_parent(self, parent: Parent) -> None:
        with self._lock:
            if any(p["email"] == parent.email for p in self.parents.values()):
                raise InvalidRequestError(f"Parent with email {parent.email} already exists")
            self.parents[str(parent.id)] = to_document(parent)

    def get_parent(self, parent_id: UUID) -> Optional[Parent]:
        with self._lock:
            return from_document(Parent, self.parents.get(str(parent_id)))

    def find_parent_by_user(self, user_id: str) -> Optional[Parent]:
        with self._lock:
            for doc in self.parents.values():
                if doc["user_id"] == user_id:
                    return from_document(Parent, doc)
        return None

    def find_parent_by_correlation(self, correlation_id: str) -> Optional[Parent]:
        with self._lock:
            for doc in self.parents.values():
                if any(self._matches(e, correlation_id) for e in doc["wallet_ledger"]):
                    return from_document(Parent, doc)
        return None

    def link_child(self, parent_id: UUID, child_id: UUID) -> None:
        with self._lock:
            doc = self.parents.get(str(parent_id))
            if doc is not None and str(child_id) not in doc["children"]:
                doc["children"].append(str(child_id))

    def push_wallet_entry(self, parent_id: UUID, entry: WalletLedgerEntry) -> bool:
        with self._lock:
            doc = self.parents.get(str(parent_id))
            if doc is None:
                return False
            return self._push_unique(doc["wallet_ledger"], entry)

    def set_wallet_balance(self, parent_id: UUID, balance_cents: int) -> None:
        with self._lock:
            doc = self.parents.get(str(parent_id))
            if doc is not None:
                doc["wallet_balance_cents"] = balance_cents

    def transition_wallet_entry(self, parent_id, entry_id, status, payment_intent_id=None) -> bool:
        with self._lock:
            doc = self.parents.get(str(parent_id))
            if doc is None:
                return False
            index = self._pending_index(doc["wallet_ledger"], entry_id)
            if index is None:
                return False
            self._settle(doc["wallet_ledger"][index], status, payment_intent_id)
            return True

    def set_vote_if_absent(self, parent_id: UUID, child_id: UUID, today: str) -> bool:
        with self._lock:
            doc = self.parents.get(str(parent_id))
            if doc is None or doc["vote_ledger"].get(str(child_id)) == today:
                return False
            doc["vote_ledger"][str(child_id)] = today
            return True

    def apply_vote(self, parent_id, child_id, today, expected_ledger_size, entry, new_balance_cents) -> bool:
        with self._lock:
            doc = self.parents.get(str(parent_id))
            if doc is None:
                return False
            if doc["vote_ledger"].get(str(child_id)) == today:
                return False
            if len(doc["wallet_ledger"]) != expected_ledger_size:
                return False
            doc["vote_ledger"][str(child_id)] = today
            doc["wallet_ledger"].append(entry_document(entry))
            doc["wallet_balance_cents"] = new_balance_cents
            return True

    def compensate_vote(self, parent_id, child_id, today, entry) -> bool:
        with self._lock:
            doc = self.parents.get(str(parent_id))
            if doc is None:
                return False
            if doc["vote_ledger"].get(str(child_id)) == today:
                del doc["vote_ledger"][str(child_id)]
            doc["wallet_ledger"].append(entry_document(entry))
            return True

    def insert_child(self, child: Child) -> None:
        with self._lock:
            if any(c["share_slug"] == child.share_slug for c in self.children.values()):
                raise PersistenceError(f"Share slug {child.share_slug} already taken")
            self.children[str(child.id)] = to_document(child)

    def get_child(self, child_id: UUID) -> Optional[Child]:
        with self._lock:
            return from_document(Child, self.children.get(str(child_id)))

    def find_child_by_slug(self, share_slug: str) -> Optional[Child]:
        with self._lock:
            for doc in self.children.values():
                if doc["share_slug"] == share_slug:
                    return from_document(Child, doc)
        return None

    def find_child_by_correlation(self, correlation_id: str) -> Optional[Child]:
        with self._lock:
            for doc in self.children.values():
                if any(self._matches(e, correlation_id) for e in doc["neighbor_ledger"]):
                    return from_document(Child, doc)
        return None

    def push_neighbor_entry(self, child_id: UUID, entry: NeighborLedgerEntry) -> bool:
        with self._lock:
            doc = self.children.get(str(child_id))
            if doc is None:
                return False
            return self._push_unique(doc["neighbor_ledger"], entry)

    def set_neighbor_balance(self, child_id: UUID, balance_cents: int) -> None:
        with self._lock:
            doc = self.children.get(str(child_id))
            if doc is not None:
                doc["neighbor_balance_cents"] = balance_cents

    def transition_neighbor_entry(self, child_id, entry_id, status, donor_cents=None, payment_intent_id=None) -> bool:
        with self._lock:
            doc = self.children.get(str(child_id))
            if doc is None:
                return False
            index = self._pending_index(doc["neighbor_ledger"], entry_id)
            if index is None:
                return False
            self._settle(doc["neighbor_ledger"][index], status, payment_intent_id)
            if donor_cents is not None:
                doc["donor_totals"]["count"] += 1
                doc["donor_totals"]["total_cents"] += donor_cents
            return True

    def add_score(self, child_id: UUID, delta: int, max_score: int) -> Optional[Child]:
        with self._lock:
            doc = self.children.get(str(child_id))
            if doc is None:
                return None
            doc["score365"] = max(0, min(max_score, doc["score365"] + delta))
            return from_document(Child, doc)

    def spend_score(self, child_id: UUID, expected_score: int, points: int) -> bool:
        with self._lock:
            doc = self.children.get(str(child_id))
            if doc is None or doc["score365"] != expected_score or points > expected_score:
                return False
            doc["score365"] -= points
            return True


class MongoStorage(DocumentStorage):
    def __init__(self, uri: Optional[str] = None, db_name: Optional[str] = None, database=None):
        if database is None:
            database = MongoClient(uri)[db_name]
        self.db = database
        self.parents = database["parents"]
        self.children = database["children"]
        try:
            self.parents.create_index([("email", ASCENDING)], unique=True)
            self.parents.create_index([("user_id", ASCENDING)])
            self.parents.create_index([("wallet_ledger.stripe_payment_intent_id", ASCENDING)], sparse=True)
            self.parents.create_index([("wallet_ledger.stripe_checkout_session_id", ASCENDING)], sparse=True)
            self.children.create_index([("share_slug", ASCENDING)], unique=True)
            self.children.create_index([("parent_id", ASCENDING)])
            self.children.create_index([("neighbor_ledger.stripe_payment_intent_id", ASCENDING)], sparse=True)
            self.children.create_index([("neighbor_ledger.stripe_checkout_session_id", ASCENDING)], sparse=True)
        except PyMongoError as e:
            raise PersistenceError(f"Could not prepare collections: {e}") from e

    @staticmethod
    def _unique_filter(field: str, entry) -> dict:
        return {
            f"{field}.{key}": {"$ne": value}
            for key, value in (
                ("stripe_payment_intent_id", entry.stripe_payment_intent_id),
                ("stripe_checkout_session_id", entry.stripe_checkout_session_id),
            )
            if value
        }

    @staticmethod
    def _settle_update(field: str, status: EntryStatus, payment_intent_id: Optional[str]) -> dict:
        update = {"$set": {
            f"{field}.$.status": status.value,
            f"{field}.$.updated_at": utcnow().isoformat(),
        }}
        if payment_intent_id:
            update["$set"][f"{field}.$.stripe_payment_intent_id"] = payment_intent_id
        return update

    @staticmethod
    def _correlation_filter(field: str, correlation_id: str) -> dict:
        return {"$or": [
            {f"{field}.stripe_payment_intent_id": correlation_id},
            {f"{field}.stripe_checkout_session_id": correlation_id},
        ]}

    def _run(self, operation, *args, **kwargs):
        try:
            return operation(*args, **kwargs)
        except PyMongoError as e:
            logger.exception("Mongo operation %s failed", getattr(operation, "__name__", operation))
            raise PersistenceError(str(e)) from e

    def insert_parent(self, parent: Parent) -> None:
        try:
            self.parents.insert_one(to_document(parent))
        except DuplicateKeyError as e:
            raise InvalidRequestError(f"Parent with email {parent.email} already exists") from e
        except PyMongoError as e:
            logger.exception("Mongo insert of parent %s failed", parent.id)
            raise PersistenceError(str(e)) from e

    def get_parent(self, parent_id: UUID) -> Optional[Parent]:
        return from_document(Parent, self._run(self.parents.find_one, {"_id": str(parent_id)}))

    def find_parent_by_user(self, user_id: str) -> Optional[Parent]:
        return from_document(Parent, self._run(self.parents.find_one, {"user_id": user_id}))

    def find_parent_by_correlation(self, correlation_id: str) -> Optional[Parent]:
        doc = self._run(self.parents.find_one, self._correlation_filter("wallet_ledger", correlation_id))
        return from_document(Parent, doc)

    def link_child(self, parent_id: UUID, child_id: UUID) -> None:
        self._run(self.parents.update_one, {"_id": str(parent_id)}, {"$addToSet": {"children": str(child_id)}})

    def push_wallet_entry(self, parent_id: UUID, entry: WalletLedgerEntry) -> bool:
        result = self._run(
            self.parents.update_one,
            {"_id": str(parent_id), **self._unique_filter("wallet_ledger", entry)},
            {"$push": {"wallet_ledger": entry_document(entry)}},
        )
        return result.modified_count == 1

    def set_wallet_balance(self, parent_id: UUID, balance_cents: int) -> None:
        self._run(self.parents.update_one, {"_id": str(parent_id)}, {"$set": {"wallet_balance_cents": balance_cents}})

    def transition_wallet_entry(self, parent_id, entry_id, status, payment_intent_id=None) -> bool:
        result = self._run(
            self.parents.update_one,
            {"_id": str(parent_id), "wallet_ledger": {"$elemMatch": {"id": str(entry_id), "status": "PENDING"}}},
            self._settle_update("wallet_ledger", status, payment_intent_id),
        )
        return result.modified_count == 1

    def set_vote_if_absent(self, parent_id: UUID, child_id: UUID, today: str) -> bool:
        key = f"vote_ledger.{child_id}"
        result = self._run(
            self.parents.update_one,
            {"_id": str(parent_id), key: {"$ne": today}},
            {"$set": {key: today}},
        )
        return result.modified_count == 1

    def apply_vote(self, parent_id, child_id, today, expected_ledger_size, entry, new_balance_cents) -> bool:
        key = f"vote_ledger.{child_id}"
        result = self._run(
            self.parents.update_one,
            {"_id": str(parent_id), key: {"$ne": today}, "wallet_ledger": {"$size": expected_ledger_size}},
            {
                "$set": {key: today, "wallet_balance_cents": new_balance_cents},
                "$push": {"wallet_ledger": entry_document(entry)},
            },
        )
        return result.modified_count == 1

    def compensate_vote(self, parent_id, child_id, today, entry) -> bool:
        key = f"vote_ledger.{child_id}"
        pushed = self._run(
            self.parents.update_one,
            {"_id": str(parent_id)},
            {"$push": {"wallet_ledger": entry_document(entry)}},
        )
        self._run(self.parents.update_one, {"_id": str(parent_id), key: today}, {"$unset": {key: ""}})
        return pushed.modified_count == 1

    def insert_child(self, child: Child) -> None:
        self._run(self.children.insert_one, to_document(child))

    def get_child(self, child_id: UUID) -> Optional[Child]:
        return from_document(Child, self._run(self.children.find_one, {"_id": str(child_id)}))

    def find_child_by_slug(self, share_slug: str) -> Optional[Child]:
        return from_document(Child, self._run(self.children.find_one, {"share_slug": share_slug}))

    def find_child_by_correlation(self, correlation_id: str) -> Optional[Child]:
        doc = self._run(self.children.find_one, self._correlation_filter("neighbor_ledger", correlation_id))
        return from_document(Child, doc)

    def push_neighbor_entry(self, child_id: UUID, entry: NeighborLedgerEntry) -> bool:
        result = self._run(
            self.children.update_one,
            {"_id": str(child_id), **self._unique_filter("neighbor_ledger", entry)},
            {"$push": {"neighbor_ledger": entry_document(entry)}},
        )
        return result.modified_count == 1

    def set_neighbor_balance(self, child_id: UUID, balance_cents: int) -> None:
        self._run(self.children.update_one, {"_id": str(child_id)}, {"$set": {"neighbor_balance_cents": balance_cents}})

    def transition_neighbor_entry(self, child_id, entry_id, status, donor_cents=None, payment_intent_id=None) -> bool:
        update = self._settle_update("neighbor_ledger", status, payment_intent_id)
        if donor_cents is not None:
            update["$inc"] = {"donor_totals.count": 1, "donor_totals.total_cents": donor_cents}
        result = self._run(
            self.children.update_one,
            {"_id": str(child_id), "neighbor_ledger": {"$elemMatch": {"id": str(entry_id), "status": "PENDING"}}},
            update,
        )
        return result.modified_count == 1

    def add_score(self, child_id: UUID, delta: int, max_score: int) -> Optional[Child]:
        doc = self._run(
            self.children.find_one_and_update,
            {"_id": str(child_id)},
            [{"$set": {"score365": {"$max": [0, {"$min": [max_score, {"$add": ["$score365", delta]}]}]}}}],
            return_document=ReturnDocument.AFTER,
        )
        return from_document(Child, doc)

    def spend_score(self, child_id: UUID, expected_score: int, points: int) -> bool:
        if points > expected_score:
            return False
        result = self._run(
            self.children.update_one,
            {"_id": str(child_id), "score365": expected_score},
            {"$inc": {"score365": -points}},
        )
        return result.modified_count == 1
