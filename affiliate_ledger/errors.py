class LedgerError(Exception):
    pass


class NotFoundError(LedgerError):
    pass


class UserNotFoundError(NotFoundError):
    pass


class EarningNotFoundError(NotFoundError):
    pass


class WithdrawalNotFoundError(NotFoundError):
    pass


# Integrity errors point at a caller bug or a race and are logged as anomalies.

class IntegrityError(LedgerError):
    pass


class CycleError(IntegrityError):
    pass


class AlreadyLinkedError(IntegrityError):
    pass


class DuplicatePurchaseError(IntegrityError):
    pass


class InvalidStateError(IntegrityError):
    pass


class InvalidTransitionError(IntegrityError):
    pass


# Validation errors are not retryable without changed input.

class LedgerValidationError(LedgerError):
    pass


class BelowMinimumError(LedgerValidationError):
    pass


class InsufficientBalanceError(LedgerValidationError):
    pass


class InvalidAmountError(LedgerValidationError):
    pass


class InactiveUserError(LedgerValidationError):
    pass


class InvalidReferralCodeError(LedgerValidationError):
    pass


class PayoutError(LedgerError):
    """Raised by a payout rail when a transfer attempt fails."""


class PayoutStuckError(LedgerError):
    """Settlement gave up; the withdrawal is left in processing and flagged as stuck."""


class LockTimeoutError(LedgerError):
    pass
