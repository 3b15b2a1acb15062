"""Error kinds surfaced by the broker core."""


class BrokerError(Exception):
    """Base class for every error the broker reports upstream."""

    code = "broker_error"


class Conflict(BrokerError):
    """The address is already bound to a live session that may not be superseded."""

    code = "conflict"


class UnknownTier(BrokerError):
    code = "unknown_tier"


class EnforcementFailure(BrokerError):
    """A grant or revoke could not be confirmed after retrying."""

    code = "enforcement_failure"


class NotFound(BrokerError):
    code = "not_found"


class InvalidState(BrokerError):
    """The session is not in a status that permits the operation."""

    code = "invalid_state"
