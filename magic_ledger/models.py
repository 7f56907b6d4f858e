from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Union
from uuid import UUID, uuid4
from pydantic import BaseModel, Field, ConfigDict, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WalletEntryType(str, Enum):
    TOP_UP = "TOP_UP"
    REFUND = "REFUND"
    ADJUSTMENT = "ADJUSTMENT"


class NeighborEntryType(str, Enum):
    DONATION = "DONATION"
    REFUND = "REFUND"
    ADJUSTMENT = "ADJUSTMENT"


class EntryStatus(str, Enum):
    PENDING = "PENDING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


class LedgerEntryBase(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    amount_cents: int
    currency: str = "usd"
    status: EntryStatus = EntryStatus.PENDING
    stripe_payment_intent_id: Optional[str] = None
    stripe_checkout_session_id: Optional[str] = None
    description: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(from_attributes=True)

    @field_validator("amount_cents")
    @classmethod
    def _non_zero(cls, value: int) -> int:
        if value == 0:
            raise ValueError("amount_cents must be non-zero")
        return value

    def can_transition(self) -> bool:
        return self.status == EntryStatus.PENDING

    def matches(self, correlation_id: str) -> bool:
        return correlation_id in (self.stripe_payment_intent_id, self.stripe_checkout_session_id)


class WalletLedgerEntry(LedgerEntryBase):
    type: WalletEntryType


class NeighborLedgerEntry(LedgerEntryBase):
    type: NeighborEntryType
    from_name: Optional[str] = Field(default=None, max_length=100)
    from_email: Optional[str] = Field(default=None, max_length=254)
    message: Optional[str] = Field(default=None, max_length=500)

    @field_validator("from_email")
    @classmethod
    def _lower_email(cls, value: Optional[str]) -> Optional[str]:
        return value.strip().lower() if value else value


class DonorTotals(BaseModel):
    count: int = Field(default=0, ge=0)
    total_cents: int = Field(default=0, ge=0)


def sum_succeeded(entries) -> int:
    return sum(e.amount_cents for e in entries if e.status == EntryStatus.SUCCEEDED)


def pick_entry(entries, correlation_id: str):
    """First entry for `correlation_id`, preferring one still pending."""
    matches = [e for e in entries if e.matches(correlation_id)]
    pending = [e for e in matches if e.can_transition()]
    return (pending or matches or [None])[0]


class Parent(BaseModel):
    """Parent aggregate: wallet ledger plus the per-child daily vote gate."""

    id: UUID = Field(default_factory=uuid4)
    user_id: str
    email: str
    name: str
    wallet_balance_cents: int = 0
    wallet_ledger: list[WalletLedgerEntry] = Field(default_factory=list)
    # child id -> "YYYY-MM-DD" of the last vote
    vote_ledger: dict[str, str] = Field(default_factory=dict)
    children: list[UUID] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(from_attributes=True)

    @field_validator("email")
    @classmethod
    def _lower_email(cls, value: str) -> str:
        return value.strip().lower()

    def add_ledger_entry(
        self,
        type: WalletEntryType,
        amount_cents: int,
        status: EntryStatus = EntryStatus.PENDING,
        stripe_payment_intent_id: Optional[str] = None,
        stripe_checkout_session_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> WalletLedgerEntry:
        """Append an entry. The cached balance is left untouched."""
        entry = WalletLedgerEntry(
            type=type,
            amount_cents=amount_cents,
            status=status,
            stripe_payment_intent_id=stripe_payment_intent_id,
            stripe_checkout_session_id=stripe_checkout_session_id,
            description=description,
        )
        self.wallet_ledger.append(entry)
        return entry

    def recompute_wallet_balance(self) -> int:
        self.wallet_balance_cents = sum_succeeded(self.wallet_ledger)
        return self.wallet_balance_cents

    def find_entry(self, correlation_id: str) -> Optional[WalletLedgerEntry]:
        return pick_entry(self.wallet_ledger, correlation_id)

    def can_vote_today(self, child_id, today: str) -> bool:
        return self.vote_ledger.get(str(child_id)) != today

    def record_vote(self, child_id, today: str) -> None:
        self.vote_ledger[str(child_id)] = today


class Child(BaseModel):
    """Child aggregate: magic score and the neighbor donation ledger."""

    id: UUID = Field(default_factory=uuid4)
    parent_id: UUID
    display_name: str
    share_slug: str
    score365: int = Field(default=0, ge=0)
    donations_enabled: bool = True
    neighbor_balance_cents: int = 0
    neighbor_ledger: list[NeighborLedgerEntry] = Field(default_factory=list)
    donor_totals: DonorTotals = Field(default_factory=DonorTotals)
    created_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(from_attributes=True)

    def add_neighbor_ledger_entry(
        self,
        type: NeighborEntryType,
        amount_cents: int,
        status: EntryStatus = EntryStatus.PENDING,
        stripe_payment_intent_id: Optional[str] = None,
        stripe_checkout_session_id: Optional[str] = None,
        from_name: Optional[str] = None,
        from_email: Optional[str] = None,
        message: Optional[str] = None,
        description: Optional[str] = None,
    ) -> NeighborLedgerEntry:
        entry = NeighborLedgerEntry(
            type=type,
            amount_cents=amount_cents,
            status=status,
            stripe_payment_intent_id=stripe_payment_intent_id,
            stripe_checkout_session_id=stripe_checkout_session_id,
            from_name=from_name,
            from_email=from_email,
            message=message,
            description=description,
        )
        self.neighbor_ledger.append(entry)
        return entry

    def recompute_neighbor_balance(self) -> int:
        self.neighbor_balance_cents = sum_succeeded(self.neighbor_ledger)
        return self.neighbor_balance_cents

    def find_entry(self, correlation_id: str) -> Optional[NeighborLedgerEntry]:
        return pick_entry(self.neighbor_ledger, correlation_id)

    def available_magic_points(self, point_cost_cents: int = 100) -> int:
        return self.score365 + self.neighbor_balance_cents // point_cost_cents


# Request / response models

class CreateParentRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    email: str = Field(..., min_length=3, max_length=254)
    name: str = Field(..., min_length=1, max_length=100)


class AddChildRequest(BaseModel):
    display_name: str = Field(..., min_length=1, max_length=60)


class AddWalletEntryRequest(BaseModel):
    type: WalletEntryType
    amount_cents: int
    status: EntryStatus = EntryStatus.PENDING
    stripe_payment_intent_id: Optional[str] = None
    stripe_checkout_session_id: Optional[str] = None
    description: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "type": "TOP_UP",
            "amount_cents": 2500,
            "stripe_payment_intent_id": "pi_3Q0example",
        }
    })


class DonationRequest(BaseModel):
    amount_cents: int = Field(..., gt=0)
    from_name: str = Field(..., min_length=1, max_length=100)
    from_email: Optional[str] = Field(default=None, max_length=254)
    message: Optional[str] = Field(default=None, max_length=500)
    stripe_checkout_session_id: Optional[str] = None
    stripe_payment_intent_id: Optional[str] = None


class VoteRequest(BaseModel):
    child_id: UUID
    points_to_add: int = Field(..., description="Magic points to add, 1 point costs 100 cents")
    today: Optional[str] = Field(default=None, pattern=r"^\d{4}-\d{2}-\d{2}$")


class SpendPointsRequest(BaseModel):
    points: int = Field(..., gt=0)


class ConfirmPaymentRequest(BaseModel):
    correlation_id: str = Field(..., min_length=1)
    succeeded: bool = True
    payment_intent_id: Optional[str] = None


class VoteResult(BaseModel):
    child_id: UUID
    new_score: int
    new_balance: int
    points_added: int
    cost_cents: int
    ledger_entry: WalletLedgerEntry


class CanVoteResponse(BaseModel):
    child_id: UUID
    today: str
    can_vote: bool


class BalanceResponse(BaseModel):
    owner_id: UUID
    balance_cents: int
    total_entries: int


class WalletHistoryResponse(BaseModel):
    parent_id: UUID
    entries: list[WalletLedgerEntry]
    total_count: int
    current_balance: int


class SpendResult(BaseModel):
    child_id: UUID
    points_spent: int
    new_score: int
    neighbor_balance_cents: int
    remaining_points: int


class PaymentConfirmation(BaseModel):
    owner_id: UUID
    scope: str
    entry: Union[WalletLedgerEntry, NeighborLedgerEntry]
    balance_cents: int


class ShareView(BaseModel):
    display_name: str
    share_slug: str
    score365: int
    neighbor_balance_cents: int
    donor_totals: DonorTotals
    donations_enabled: bool
