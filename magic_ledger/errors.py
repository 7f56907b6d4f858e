from typing import Optional


class LedgerServiceError(Exception):
    code = "LEDGER_ERROR"


class InvalidRequestError(LedgerServiceError):
    code = "INVALID_REQUEST"


class InvalidStateTransitionError(LedgerServiceError):
    code = "INVALID_STATE_TRANSITION"


class NotFoundError(LedgerServiceError):
    code = "NOT_FOUND"


class ParentNotFoundError(NotFoundError):
    pass


class ChildNotFoundError(NotFoundError):
    pass


class LedgerEntryNotFoundError(NotFoundError):
    pass


class AlreadyVotedError(LedgerServiceError):
    code = "ALREADY_VOTED"

    def __init__(self, child_id, today: str):
        self.child_id = child_id
        self.today = today
        super().__init__("Already voted for this child today. Try again tomorrow!")


class InsufficientBalanceError(LedgerServiceError):
    code = "INSUFFICIENT_BALANCE"

    def __init__(self, required_cents: int, available_cents: int, message: Optional[str] = None):
        self.required_cents = required_cents
        self.available_cents = available_cents
        super().__init__(
            message
            or f"Insufficient wallet balance. Need ${required_cents / 100:.2f}, "
               f"have ${available_cents / 100:.2f}"
        )


class PersistenceError(LedgerServiceError):
    code = "PERSISTENCE_FAILURE"
