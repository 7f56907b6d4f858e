import pytest

from magic_ledger.models import (
    AddChildRequest,
    AddWalletEntryRequest,
    CreateParentRequest,
    EntryStatus,
    WalletEntryType,
)
from magic_ledger.service import MagicLedgerService
from magic_ledger.storage import InMemoryStorage


TODAY = "2026-12-01"
TOMORROW = "2026-12-02"


def fund_wallet(service, parent_id, amount_cents, entry_type=WalletEntryType.TOP_UP):
    return service.add_wallet_entry(parent_id, AddWalletEntryRequest(
        type=entry_type,
        amount_cents=amount_cents,
        status=EntryStatus.SUCCEEDED,
    ))


def make_family(service, child_name="Ava"):
    parent = service.create_parent(CreateParentRequest(
        user_id="user-1",
        email="Parent@Example.com",
        name="Pat Parent",
    ))
    child = service.add_child(parent.id, AddChildRequest(display_name=child_name))
    return parent, child


@pytest.fixture
def service():
    return MagicLedgerService(storage=InMemoryStorage())


@pytest.fixture
def family(service):
    return make_family(service)
