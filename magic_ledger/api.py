from typing import Optional
from uuid import UUID
from fastapi import Depends, FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import settings
from .errors import (
    LedgerServiceError, NotFoundError, AlreadyVotedError, InsufficientBalanceError,
    InvalidRequestError, InvalidStateTransitionError, PersistenceError,
)
from .logger import configure_logging
from .models import (
    AddChildRequest, AddWalletEntryRequest, BalanceResponse, CanVoteResponse, Child,
    ConfirmPaymentRequest, CreateParentRequest, DonationRequest, NeighborLedgerEntry,
    Parent, PaymentConfirmation, ShareView, SpendPointsRequest, SpendResult, VoteRequest,
    VoteResult, WalletHistoryResponse, WalletLedgerEntry,
)
from .service import MagicLedgerService

logger = configure_logging()

app = FastAPI(
    title=settings.app_name,
    description="Wallet, neighbor donation and daily vote ledgers for Christmas magic points",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.backend_cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

ledger_service = MagicLedgerService()


def get_service() -> MagicLedgerService:
    return ledger_service


STATUS_BY_ERROR = [
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (AlreadyVotedError, status.HTTP_409_CONFLICT),
    (InsufficientBalanceError, status.HTTP_400_BAD_REQUEST),
    (InvalidRequestError, status.HTTP_400_BAD_REQUEST),
    (InvalidStateTransitionError, status.HTTP_400_BAD_REQUEST),
    (PersistenceError, status.HTTP_503_SERVICE_UNAVAILABLE),
]


@app.exception_handler(LedgerServiceError)
async def ledger_error_handler(request: Request, exc: LedgerServiceError) -> JSONResponse:
    status_code = next(
        (code for error_type, code in STATUS_BY_ERROR if isinstance(exc, error_type)),
        status.HTTP_400_BAD_REQUEST,
    )
    body = {"detail": str(exc), "code": exc.code}
    if isinstance(exc, InsufficientBalanceError):
        body["required_cents"] = exc.required_cents
        body["available_cents"] = exc.available_cents
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status_code, content=body)


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "magic-ledger", "storage": settings.storage_backend}


@app.post("/parents", response_model=Parent, status_code=status.HTTP_201_CREATED, tags=["Parents"])
def create_parent(request: CreateParentRequest, service: MagicLedgerService = Depends(get_service)) -> Parent:
    return service.create_parent(request)


@app.get("/parents/{parent_id}", response_model=Parent, tags=["Parents"])
def get_parent(parent_id: UUID, service: MagicLedgerService = Depends(get_service)) -> Parent:
    return service.get_parent(parent_id)


@app.post("/parents/{parent_id}/children", response_model=Child, status_code=status.HTTP_201_CREATED, tags=["Parents"])
def add_child(parent_id: UUID, request: AddChildRequest, service: MagicLedgerService = Depends(get_service)) -> Child:
    return service.add_child(parent_id, request)


@app.post(
    "/parents/{parent_id}/wallet/entries",
    response_model=WalletLedgerEntry,
    status_code=status.HTTP_201_CREATED,
    tags=["Wallet"],
)
def add_wallet_entry(
    parent_id: UUID, request: AddWalletEntryRequest, service: MagicLedgerService = Depends(get_service)
) -> WalletLedgerEntry:
    return service.add_wallet_entry(parent_id, request)


@app.get("/parents/{parent_id}/wallet/balance", response_model=BalanceResponse, tags=["Wallet"])
def get_wallet_balance(parent_id: UUID, service: MagicLedgerService = Depends(get_service)) -> BalanceResponse:
    return service.get_wallet_balance(parent_id)


@app.get("/parents/{parent_id}/wallet/ledger", response_model=WalletHistoryResponse, tags=["Wallet"])
def get_wallet_ledger(
    parent_id: UUID, limit: int = 50, offset: int = 0, service: MagicLedgerService = Depends(get_service)
) -> WalletHistoryResponse:
    return service.get_wallet_history(parent_id, limit, offset)


@app.get("/parents/{parent_id}/votes/{child_id}", response_model=CanVoteResponse, tags=["Votes"])
def can_vote_today(
    parent_id: UUID, child_id: UUID, today: Optional[str] = None, service: MagicLedgerService = Depends(get_service)
) -> CanVoteResponse:
    today = today or service.today()
    return CanVoteResponse(child_id=child_id, today=today, can_vote=service.can_vote_today(parent_id, child_id, today))


@app.post("/parents/{parent_id}/votes", response_model=VoteResult, tags=["Votes"])
def cast_vote(parent_id: UUID, request: VoteRequest, service: MagicLedgerService = Depends(get_service)) -> VoteResult:
    return service.cast_vote(parent_id, request.child_id, request.points_to_add, request.today)


@app.post("/parents/{parent_id}/children/{child_id}/spend", response_model=SpendResult, tags=["Children"])
def spend_magic_points(
    parent_id: UUID, child_id: UUID, request: SpendPointsRequest, service: MagicLedgerService = Depends(get_service)
) -> SpendResult:
    return service.spend_magic_points(parent_id, child_id, request.points)


@app.post(
    "/children/{child_id}/donations",
    response_model=NeighborLedgerEntry,
    status_code=status.HTTP_201_CREATED,
    tags=["Children"],
)
def donate(child_id: UUID, request: DonationRequest, service: MagicLedgerService = Depends(get_service)) -> NeighborLedgerEntry:
    return service.add_neighbor_entry(child_id, request)


@app.get("/children/{child_id}/neighbor/balance", response_model=BalanceResponse, tags=["Children"])
def get_neighbor_balance(child_id: UUID, service: MagicLedgerService = Depends(get_service)) -> BalanceResponse:
    return service.get_neighbor_balance(child_id)


@app.get("/share/{share_slug}", response_model=ShareView, tags=["Share"])
def get_share_view(share_slug: str, service: MagicLedgerService = Depends(get_service)) -> ShareView:
    return service.get_share_view(share_slug)


@app.post("/payments/confirm", response_model=PaymentConfirmation, tags=["Payments"])
def confirm_payment(
    request: ConfirmPaymentRequest, service: MagicLedgerService = Depends(get_service)
) -> PaymentConfirmation:
    return service.confirm_payment(request.correlation_id, request.succeeded, request.payment_intent_id)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
