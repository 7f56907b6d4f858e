import logging
import secrets
import string
from datetime import datetime
from typing import Optional
from uuid import UUID

import pytz

from .config import Settings, settings as default_settings
from .errors import (
    AlreadyVotedError,
    ChildNotFoundError,
    InsufficientBalanceError,
    InvalidRequestError,
    InvalidStateTransitionError,
    LedgerEntryNotFoundError,
    ParentNotFoundError,
    PersistenceError,
)
from .models import (
    AddChildRequest,
    AddWalletEntryRequest,
    BalanceResponse,
    Child,
    CreateParentRequest,
    DonationRequest,
    EntryStatus,
    NeighborEntryType,
    NeighborLedgerEntry,
    Parent,
    PaymentConfirmation,
    ShareView,
    SpendResult,
    VoteResult,
    WalletEntryType,
    WalletHistoryResponse,
    WalletLedgerEntry,
)
from .storage import DocumentStorage, InMemoryStorage, MongoStorage

logger = logging.getLogger("magic_ledger.service")

SLUG_ALPHABET = string.ascii_lowercase + string.digits


def build_storage(config: Settings) -> DocumentStorage:
    if config.storage_backend == "mongo":
        return MongoStorage(config.mongo_uri, config.mongo_db)
    if config.storage_backend == "memory":
        return InMemoryStorage()
    raise ValueError(f"Unknown storage backend {config.storage_backend!r}")


class MagicLedgerService:
    def __init__(self, storage: Optional[DocumentStorage] = None, config: Optional[Settings] = None):
        self.config = config or default_settings
        self.storage = storage or build_storage(self.config)
        self.tz = pytz.timezone(self.config.timezone)

    def today(self) -> str:
        """Today's date in the reference timezone, "YYYY-MM-DD"."""
        return datetime.now(self.tz).date().isoformat()

    # Onboarding

    def create_parent(self, request: CreateParentRequest) -> Parent:
        if self.storage.find_parent_by_user(request.user_id):
            raise InvalidRequestError(f"User {request.user_id} already has a parent profile")
        parent = Parent(user_id=request.user_id, email=request.email, name=request.name.strip())
        self.storage.insert_parent(parent)
        logger.info("Created parent %s for user %s", parent.id, parent.user_id)
        return parent

    def get_parent(self, parent_id: UUID) -> Parent:
        parent = self.storage.get_parent(parent_id)
        if parent is None:
            raise ParentNotFoundError(f"Parent {parent_id} not found")
        return parent

    def get_child(self, child_id: UUID) -> Child:
        child = self.storage.get_child(child_id)
        if child is None:
            raise ChildNotFoundError(f"Child {child_id} not found")
        return child

    def get_family_child(self, parent: Parent, child_id: UUID) -> Child:
        child = self.storage.get_child(child_id)
        if child is None or child.parent_id != parent.id:
            raise ChildNotFoundError(f"Child {child_id} not found")
        return child

    def add_child(self, parent_id: UUID, request: AddChildRequest) -> Child:
        parent = self.get_parent(parent_id)
        child = Child(
            parent_id=parent.id,
            display_name=request.display_name.strip(),
            share_slug=self._unique_share_slug(),
        )
        self.storage.insert_child(child)
        self.storage.link_child(parent.id, child.id)
        logger.info("Added child %s to parent %s slug=%s", child.id, parent.id, child.share_slug)
        return child

    def _unique_share_slug(self, max_retries: int = 10) -> str:
        for attempt in range(max_retries):
            length = 12 + attempt // 3
            slug = "".join(secrets.choice(SLUG_ALPHABET) for _ in range(length))
            if self.storage.find_child_by_slug(slug) is None:
                return slug
            logger.warning("Share slug collision %s (attempt %d/%d)", slug, attempt + 1, max_retries)
        raise PersistenceError("Could not generate a unique share slug")

    def get_share_view(self, share_slug: str) -> ShareView:
        child = self.storage.find_child_by_slug(share_slug)
        if child is None:
            raise ChildNotFoundError(f"No child shared as {share_slug}")
        return ShareView(
            display_name=child.display_name,
            share_slug=child.share_slug,
            score365=child.score365,
            neighbor_balance_cents=child.recompute_neighbor_balance(),
            donor_totals=child.donor_totals,
            donations_enabled=child.donations_enabled,
        )

    # Wallet ledger

    def add_wallet_entry(self, parent_id: UUID, request: AddWalletEntryRequest) -> WalletLedgerEntry:
        """Append an entry to the parent's wallet ledger.

        A correlation id already present in the ledger returns the existing
        entry instead of appending a second one.
        """
        parent = self.get_parent(parent_id)
        self._validate_wallet_amount(request.type, request.amount_cents)

        existing = self._existing_entry(parent, request)
        if existing is not None:
            logger.info("Wallet entry %s already recorded on parent %s", existing.id, parent.id)
            return existing

        if request.status == EntryStatus.SUCCEEDED and request.amount_cents < 0:
            available = parent.recompute_wallet_balance()
            if available < -request.amount_cents:
                raise InsufficientBalanceError(-request.amount_cents, available)

        entry = parent.add_ledger_entry(
            type=request.type,
            amount_cents=request.amount_cents,
            status=request.status,
            stripe_payment_intent_id=request.stripe_payment_intent_id,
            stripe_checkout_session_id=request.stripe_checkout_session_id,
            description=request.description,
        )
        if not self.storage.push_wallet_entry(parent.id, entry):
            existing = self._existing_entry(self.get_parent(parent.id), request)
            if existing is None:
                raise PersistenceError(f"Could not append wallet entry for parent {parent.id}")
            logger.info("Wallet entry %s was recorded concurrently on parent %s", existing.id, parent.id)
            return existing
        self._refresh_wallet_balance(parent.id)
        logger.info(
            "Wallet entry %s %s %d cents (%s) on parent %s",
            entry.id, entry.type.value, entry.amount_cents, entry.status.value, parent.id,
        )
        return entry

    @staticmethod
    def _existing_entry(aggregate, request):
        """The ledger entry already carrying one of the request's payment ids."""
        for correlation_id in (request.stripe_payment_intent_id, request.stripe_checkout_session_id):
            existing = aggregate.find_entry(correlation_id) if correlation_id else None
            if existing is not None:
                return existing
        return None

    def _validate_wallet_amount(self, entry_type: WalletEntryType, amount_cents: int) -> None:
        if amount_cents == 0:
            raise InvalidRequestError("amount_cents must be non-zero")
        if entry_type == WalletEntryType.TOP_UP:
            low, high = self.config.min_wallet_top_up_cents, self.config.max_wallet_top_up_cents
            if not low <= amount_cents <= high:
                raise InvalidRequestError(f"Top-up must be between {low} and {high} cents")

    def _refresh_wallet_balance(self, parent_id: UUID) -> int:
        parent = self.get_parent(parent_id)
        balance = parent.recompute_wallet_balance()
        self.storage.set_wallet_balance(parent.id, balance)
        return balance

    def get_wallet_balance(self, parent_id: UUID) -> BalanceResponse:
        parent = self.get_parent(parent_id)
        cached = parent.wallet_balance_cents
        balance = parent.recompute_wallet_balance()
        if balance != cached:
            logger.info("Wallet cache for parent %s drifted: %d -> %d", parent.id, cached, balance)
            self.storage.set_wallet_balance(parent.id, balance)
        return BalanceResponse(owner_id=parent.id, balance_cents=balance, total_entries=len(parent.wallet_ledger))

    def get_wallet_history(self, parent_id: UUID, limit: int = 50, offset: int = 0) -> WalletHistoryResponse:
        parent = self.get_parent(parent_id)
        entries = sorted(parent.wallet_ledger, key=lambda e: e.created_at, reverse=True)
        return WalletHistoryResponse(
            parent_id=parent.id,
            entries=entries[offset:offset + limit],
            total_count=len(entries),
            current_balance=parent.recompute_wallet_balance(),
        )

    # Neighbor ledger

    def add_neighbor_entry(self, child_id: UUID, request: DonationRequest) -> NeighborLedgerEntry:
        """Record a pending neighbor donation for a child's public share page."""
        child = self.storage.get_child(child_id)
        if child is None or not child.donations_enabled:
            raise ChildNotFoundError("Child not found or donations not enabled")

        low, high = self.config.min_donation_cents, self.config.max_donation_cents
        if not low <= request.amount_cents <= high:
            raise InvalidRequestError(f"Donation must be between {low} and {high} cents")

        existing = self._existing_entry(child, request)
        if existing is not None:
            return existing

        entry = child.add_neighbor_ledger_entry(
            type=NeighborEntryType.DONATION,
            amount_cents=request.amount_cents,
            stripe_payment_intent_id=request.stripe_payment_intent_id,
            stripe_checkout_session_id=request.stripe_checkout_session_id,
            from_name=request.from_name.strip(),
            from_email=request.from_email,
            message=request.message,
        )
        if not self.storage.push_neighbor_entry(child.id, entry):
            existing = self._existing_entry(self.get_child(child.id), request)
            if existing is None:
                raise PersistenceError(f"Could not append donation for child {child.id}")
            logger.info("Donation %s was recorded concurrently for child %s", existing.id, child.id)
            return existing
        self._refresh_neighbor_balance(child.id)
        logger.info("Pending donation %s of %d cents for child %s", entry.id, entry.amount_cents, child.id)
        return entry

    def _refresh_neighbor_balance(self, child_id: UUID) -> int:
        child = self.get_child(child_id)
        balance = child.recompute_neighbor_balance()
        self.storage.set_neighbor_balance(child.id, balance)
        return balance

    def get_neighbor_balance(self, child_id: UUID) -> BalanceResponse:
        child = self.get_child(child_id)
        balance = child.recompute_neighbor_balance()
        self.storage.set_neighbor_balance(child.id, balance)
        return BalanceResponse(owner_id=child.id, balance_cents=balance, total_entries=len(child.neighbor_ledger))

    # Payment confirmation

    def confirm_payment(
        self,
        correlation_id: str,
        succeeded: bool = True,
        payment_intent_id: Optional[str] = None,
    ) -> PaymentConfirmation:
        """Settle the pending entry created for an external payment.

        Only flips PENDING to SUCCEEDED or FAILED; never creates entries.
        When a checkout session settles, `payment_intent_id` is linked to the
        entry so later payment-intent events find it.
        """
        status = EntryStatus.SUCCEEDED if succeeded else EntryStatus.FAILED

        parent = self.storage.find_parent_by_correlation(correlation_id)
        if parent is not None:
            entry = parent.find_entry(correlation_id)
            self._check_transition(entry, correlation_id)
            link = None if entry.stripe_payment_intent_id else payment_intent_id
            if not self.storage.transition_wallet_entry(parent.id, entry.id, status, link):
                raise InvalidStateTransitionError(f"Entry {entry.id} was settled concurrently")
            balance = self._refresh_wallet_balance(parent.id)
            logger.info("Wallet payment %s -> %s, parent %s balance %d", correlation_id, status.value, parent.id, balance)
            settled = self.get_parent(parent.id).find_entry(correlation_id)
            return PaymentConfirmation(owner_id=parent.id, scope="wallet", entry=settled, balance_cents=balance)

        child = self.storage.find_child_by_correlation(correlation_id)
        if child is not None:
            entry = child.find_entry(correlation_id)
            self._check_transition(entry, correlation_id)
            donor_cents = None
            if succeeded and entry.type == NeighborEntryType.DONATION:
                donor_cents = entry.amount_cents
            link = None if entry.stripe_payment_intent_id else payment_intent_id
            if not self.storage.transition_neighbor_entry(child.id, entry.id, status, donor_cents, link):
                raise InvalidStateTransitionError(f"Entry {entry.id} was settled concurrently")
            balance = self._refresh_neighbor_balance(child.id)
            logger.info("Donation %s -> %s, child %s balance %d", correlation_id, status.value, child.id, balance)
            settled = self.get_child(child.id).find_entry(correlation_id)
            return PaymentConfirmation(owner_id=child.id, scope="neighbor", entry=settled, balance_cents=balance)

        logger.warning("No ledger entry found for payment %s", correlation_id)
        raise LedgerEntryNotFoundError(f"No ledger entry for payment {correlation_id}")

    @staticmethod
    def _check_transition(entry, correlation_id: str) -> None:
        if not entry.can_transition():
            raise InvalidStateTransitionError(
                f"Cannot settle payment {correlation_id}: entry is already {entry.status.value}"
            )

    # Vote limiter

    def can_vote_today(self, parent_id: UUID, child_id: UUID, today: Optional[str] = None) -> bool:
        parent = self.get_parent(parent_id)
        return parent.can_vote_today(child_id, today or self.today())

    def record_vote(self, parent_id: UUID, child_id: UUID, today: Optional[str] = None) -> None:
        today = today or self.today()
        parent = self.get_parent(parent_id)
        if not self.storage.set_vote_if_absent(parent.id, child_id, today):
            raise AlreadyVotedError(child_id, today)

    def cast_vote(
        self,
        parent_id: UUID,
        child_id: UUID,
        points_to_add: int,
        today: Optional[str] = None,
    ) -> VoteResult:
        """Convert wallet funds into magic points, once per child per day."""
        max_points = self.config.max_points_per_vote
        if not isinstance(points_to_add, int) or not 1 <= points_to_add <= max_points:
            raise InvalidRequestError(f"Can add 1-{max_points} magic points per vote")

        today = today or self.today()
        parent = self.get_parent(parent_id)
        child = self.get_family_child(parent, child_id)
        cost = points_to_add * self.config.point_cost_cents

        for attempt in range(self.config.vote_max_retries):
            debit = self._debit_for_vote(parent, child, points_to_add, cost, today)
            if debit is not None:
                entry, new_balance = debit
                break
            logger.warning(
                "Vote write for parent %s child %s lost a race (attempt %d)", parent.id, child.id, attempt + 1
            )
            parent = self.get_parent(parent.id)
        else:
            raise PersistenceError(f"Could not record vote for parent {parent.id} after retries")

        try:
            updated = self.storage.add_score(child.id, points_to_add, self.config.max_score)
        except PersistenceError:
            logger.exception("Score update failed for child %s", child.id)
            updated = None
        if updated is None:
            self._compensate_vote(parent.id, child.id, today, cost)
            raise PersistenceError(f"Could not update score for child {child.id}; vote was refunded")

        logger.info(
            "Parent %s added %d magic points to child %s (score %d, balance %d)",
            parent.id, points_to_add, child.id, updated.score365, new_balance,
        )
        return VoteResult(
            child_id=child.id,
            new_score=updated.score365,
            new_balance=new_balance,
            points_added=points_to_add,
            cost_cents=cost,
            ledger_entry=entry,
        )

    def _debit_for_vote(self, parent: Parent, child: Child, points: int, cost: int, today: str):
        """Gate check, balance check and debit in one conditional write.

        Returns the debit entry and new balance, or None when the parent
        document changed underneath us.
        """
        if not parent.can_vote_today(child.id, today):
            logger.info("Vote rejected: parent %s already voted for child %s on %s", parent.id, child.id, today)
            raise AlreadyVotedError(child.id, today)

        available = parent.recompute_wallet_balance()
        if available < cost:
            logger.info("Vote rejected: parent %s needs %d cents, has %d", parent.id, cost, available)
            raise InsufficientBalanceError(cost, available)

        entry = WalletLedgerEntry(
            type=WalletEntryType.ADJUSTMENT,
            amount_cents=-cost,
            status=EntryStatus.SUCCEEDED,
            description=f"Vote: {points} magic points for {child.display_name}",
        )
        if not self.storage.apply_vote(parent.id, child.id, today, len(parent.wallet_ledger), entry, available - cost):
            return None
        return entry, available - cost

    def _compensate_vote(self, parent_id: UUID, child_id: UUID, today: str, cost: int) -> None:
        refund = WalletLedgerEntry(
            type=WalletEntryType.REFUND,
            amount_cents=cost,
            status=EntryStatus.SUCCEEDED,
            description="Refund: vote could not be applied",
        )
        if not self.storage.compensate_vote(parent_id, child_id, today, refund):
            logger.error("Compensation for vote by parent %s on %s was not applied", parent_id, today)
            return
        self._refresh_wallet_balance(parent_id)
        logger.warning("Refunded %d cents to parent %s for failed vote on child %s", cost, parent_id, child_id)

    # Magic point spending

    def spend_magic_points(self, parent_id: UUID, child_id: UUID, points: int) -> SpendResult:
        """Spend points on a toy request, from the score first, then neighbor funds."""
        if points <= 0:
            raise InvalidRequestError("points must be positive")
        parent = self.get_parent(parent_id)
        point_cost = self.config.point_cost_cents

        for attempt in range(self.config.vote_max_retries):
            child = self.get_family_child(parent, child_id)
            child.recompute_neighbor_balance()
            available = child.available_magic_points(point_cost)
            if available < points:
                raise InsufficientBalanceError(
                    points * point_cost,
                    available * point_cost,
                    message=f"Not enough magic points. Need {points}, have {available}",
                )
            from_score = min(points, child.score365)
            if from_score == 0 or self.storage.spend_score(child.id, child.score365, from_score):
                break
            logger.warning("Score spend for child %s lost a race (attempt %d)", child.id, attempt + 1)
        else:
            raise PersistenceError(f"Could not spend points for child {child_id} after retries")

        remainder = points - from_score
        if remainder:
            entry = NeighborLedgerEntry(
                type=NeighborEntryType.ADJUSTMENT,
                amount_cents=-remainder * point_cost,
                status=EntryStatus.SUCCEEDED,
                description=f"Spent {remainder} magic points from neighbor gifts",
            )
            try:
                pushed = self.storage.push_neighbor_entry(child.id, entry)
            except PersistenceError:
                logger.exception("Neighbor spend for child %s failed", child.id)
                pushed = False
            if not pushed:
                self._compensate_spend(child.id, from_score)
                raise PersistenceError(f"Could not record neighbor spend for child {child.id}; score was restored")

        neighbor_balance = self._refresh_neighbor_balance(child.id)
        child = self.get_child(child.id)
        logger.info("Child %s spent %d magic points", child.id, points)
        return SpendResult(
            child_id=child.id,
            points_spent=points,
            new_score=child.score365,
            neighbor_balance_cents=neighbor_balance,
            remaining_points=child.available_magic_points(point_cost),
        )

    def _compensate_spend(self, child_id: UUID, from_score: int) -> None:
        if not from_score:
            return
        restored = self.storage.add_score(child_id, from_score, self.config.max_score)
        if restored is None:
            logger.error("Could not restore %d magic points to child %s", from_score, child_id)
            return
        logger.warning("Restored %d magic points to child %s after failed spend", from_score, child_id)
