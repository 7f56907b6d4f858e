"""
Unit Tests for the Neighbor Ledger

Tests cover:
1. Pending donations and the derived neighbor balance
2. Donor totals counted at settlement
3. Donation limits and disabled donations
4. The public share view
"""

import pytest
from uuid import uuid4

from conftest import make_family
from magic_ledger.errors import (
    ChildNotFoundError,
    InvalidRequestError,
    InvalidStateTransitionError,
)
from magic_ledger.models import (
    AddChildRequest,
    Child,
    DonationRequest,
    EntryStatus,
    NeighborEntryType,
)
from magic_ledger.service import MagicLedgerService
from magic_ledger.storage import InMemoryStorage


class RetriedDonationStorage(InMemoryStorage):
    """The same checkout session is recorded between the read and our append."""

    def __init__(self):
        super().__init__()
        self.raced = False

    def push_neighbor_entry(self, child_id, entry):
        if not self.raced and entry.stripe_checkout_session_id:
            self.raced = True
            super().push_neighbor_entry(child_id, entry.model_copy(update={"id": uuid4()}))
        return super().push_neighbor_entry(child_id, entry)


def donate(service, child_id, amount_cents, session_id, **kwargs):
    kwargs.setdefault("from_name", "Neighbor Ned")
    return service.add_neighbor_entry(child_id, DonationRequest(
        amount_cents=amount_cents,
        stripe_checkout_session_id=session_id,
        **kwargs,
    ))


class TestChildAggregate:
    def test_pending_donation_excluded_from_balance(self):
        """Scenario: 300 cents SUCCEEDED plus 200 cents PENDING."""
        child = Child(parent_id=uuid4(), display_name="Ava", share_slug="ava123")
        child.add_neighbor_ledger_entry(NeighborEntryType.DONATION, 300, status=EntryStatus.SUCCEEDED)
        child.add_neighbor_ledger_entry(NeighborEntryType.DONATION, 200, status=EntryStatus.PENDING)

        assert child.recompute_neighbor_balance() == 300
        assert child.neighbor_balance_cents == 300

    def test_donor_text_is_opaque_but_bounded(self):
        child = Child(parent_id=uuid4(), display_name="Ava", share_slug="ava123")

        entry = child.add_neighbor_ledger_entry(
            NeighborEntryType.DONATION, 500,
            from_name="<b>Mrs. Claus</b>",
            from_email="Claus@NorthPole.org",
            message="Merry Christmas!",
        )

        assert entry.from_name == "<b>Mrs. Claus</b>"
        assert entry.from_email == "claus@northpole.org"
        with pytest.raises(ValueError):
            child.add_neighbor_ledger_entry(NeighborEntryType.DONATION, 500, message="x" * 501)

    def test_available_points_include_neighbor_funds(self):
        child = Child(parent_id=uuid4(), display_name="Ava", share_slug="ava123", score365=10)
        child.add_neighbor_ledger_entry(NeighborEntryType.DONATION, 350, status=EntryStatus.SUCCEEDED)
        child.recompute_neighbor_balance()

        assert child.available_magic_points() == 13


class TestDonations:
    """Tests for the public donation flow."""

    def test_donation_starts_pending(self, service, family):
        _, child = family

        entry = donate(service, child.id, 300, "cs_don_1", message="For Ava")

        assert entry.type == NeighborEntryType.DONATION
        assert entry.status == EntryStatus.PENDING
        assert entry.from_name == "Neighbor Ned"
        assert service.get_neighbor_balance(child.id).balance_cents == 0

    def test_settled_donation_updates_balance_and_donor_totals(self, service, family):
        _, child = family
        donate(service, child.id, 300, "cs_don_1")
        donate(service, child.id, 200, "cs_don_2")

        confirmation = service.confirm_payment("cs_don_1")

        assert confirmation.scope == "neighbor"
        assert confirmation.owner_id == child.id
        assert confirmation.balance_cents == 300
        stored = service.get_child(child.id)
        assert stored.neighbor_balance_cents == 300
        assert stored.donor_totals.count == 1
        assert stored.donor_totals.total_cents == 300

    def test_failed_donation_not_counted(self, service, family):
        _, child = family
        donate(service, child.id, 300, "cs_don_1")

        service.confirm_payment("cs_don_1", succeeded=False)

        stored = service.get_child(child.id)
        assert stored.neighbor_balance_cents == 0
        assert stored.donor_totals.count == 0
        assert stored.neighbor_ledger[0].status == EntryStatus.FAILED

    def test_donor_counted_once(self, service, family):
        _, child = family
        donate(service, child.id, 400, "cs_don_1")
        service.confirm_payment("cs_don_1")

        with pytest.raises(InvalidStateTransitionError):
            service.confirm_payment("cs_don_1")

        assert service.get_child(child.id).donor_totals.count == 1

    def test_retried_donation_not_duplicated(self, service, family):
        _, child = family

        first = donate(service, child.id, 300, "cs_don_1")
        second = donate(service, child.id, 300, "cs_don_1")

        assert first.id == second.id
        assert len(service.get_child(child.id).neighbor_ledger) == 1

    def test_concurrent_retry_not_duplicated(self):
        service = MagicLedgerService(storage=RetriedDonationStorage())
        _, child = make_family(service)

        entry = donate(service, child.id, 300, "cs_dup")

        ledger = service.get_child(child.id).neighbor_ledger
        assert len(ledger) == 1
        assert entry.id == ledger[0].id

    def test_settlement_links_payment_intent(self, service, family):
        _, child = family
        donate(service, child.id, 300, "cs_don_1")

        service.confirm_payment("cs_don_1", payment_intent_id="pi_don_1")

        entry = service.get_child(child.id).find_entry("pi_don_1")
        assert entry.stripe_checkout_session_id == "cs_don_1"
        assert entry.status == EntryStatus.SUCCEEDED

    def test_donation_limits(self, service, family):
        _, child = family

        with pytest.raises(InvalidRequestError):
            donate(service, child.id, 99, "cs_small")
        with pytest.raises(InvalidRequestError):
            donate(service, child.id, 10001, "cs_big")

    def test_donations_disabled(self, service, family):
        _, child = family
        service.storage.children[str(child.id)]["donations_enabled"] = False

        with pytest.raises(ChildNotFoundError):
            donate(service, child.id, 300, "cs_don_1")

    def test_unknown_child(self, service):
        with pytest.raises(ChildNotFoundError):
            donate(service, uuid4(), 300, "cs_don_1")


class TestShareView:
    def test_share_view_by_slug(self, service, family):
        _, child = family
        donate(service, child.id, 500, "cs_don_1")
        service.confirm_payment("cs_don_1")

        view = service.get_share_view(child.share_slug)

        assert view.display_name == "Ava"
        assert view.neighbor_balance_cents == 500
        assert view.donor_totals.count == 1
        assert view.donations_enabled is True

    def test_unknown_slug(self, service):
        with pytest.raises(ChildNotFoundError):
            service.get_share_view("no-such-slug")

    def test_slugs_are_unique(self, service, family):
        parent, child = family

        sibling = service.add_child(parent.id, AddChildRequest(display_name="Ben"))

        assert sibling.share_slug != child.share_slug
        assert len(sibling.share_slug) == 12
        assert service.get_parent(parent.id).children == [child.id, sibling.id]
