"""
CORE App - Error kinds for FLEETLINE

Every failure raised by the workflow derives from FleetlineError.
`retryable` tells the caller whether a retry affordance should be shown;
mutating actions are never retried automatically.
"""


class FleetlineError(Exception):
    """Base class for all workflow errors."""

    code = 'error'
    retryable = False

    def __init__(self, message: str = '', **details):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.details = details

    def as_dict(self) -> dict:
        return {
            'error': self.code,
            'message': self.message,
            'retryable': self.retryable,
            **self.details,
        }


class InvalidTransition(FleetlineError):
    """Requested lifecycle move is not in the transition table."""

    code = 'invalid_transition'

    def __init__(self, current_status, action, message: str = ''):
        super().__init__(
            message or f"Cannot '{action}' a delivery in status '{current_status}'",
            current_status=str(current_status),
            action=str(action),
        )
        self.current_status = current_status
        self.action = action


class Forbidden(FleetlineError):
    """The acting role is not allowed to perform the action."""

    code = 'forbidden'


class Unauthenticated(Forbidden):
    """The backend rejected the credential (HTTP 401)."""

    code = 'unauthenticated'


class ValidationError(FleetlineError, ValueError):
    """Malformed input (negative weight, out-of-range rating, missing address...)."""

    code = 'validation_error'

    def __init__(self, message: str = '', errors=None):
        super().__init__(message or 'Invalid input', errors=errors or {})
        self.errors = errors or {}


class InsufficientFunds(ValidationError):
    """A debit would drive the wallet balance below zero."""

    code = 'insufficient_funds'


class NetworkFailure(FleetlineError):
    """Backend unreachable or answered with a non-2xx status."""

    code = 'network_failure'
    retryable = True

    def __init__(self, message: str = '', status_code=None):
        super().__init__(message or 'Backend unavailable', status_code=status_code)
        self.status_code = status_code


class Conflict(FleetlineError):
    """Entity was mutated server-side since it was last fetched."""

    code = 'conflict'
    retryable = True


class AlreadyRated(Conflict):
    """The delivery already carries a rating."""

    code = 'already_rated'
    retryable = False


class ActionInProgress(Conflict):
    """Another action on the same delivery or wallet is still awaiting a response."""

    code = 'action_in_progress'


class LedgerIntegrityError(FleetlineError):
    """A mirrored ledger breaks balance continuity."""

    code = 'ledger_integrity'
