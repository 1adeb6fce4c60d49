"""Error kinds raised by the stores, the union-find engine and the resolver."""


class IdentityError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(IdentityError):
    """Malformed or insufficient input. Raised before any write."""

    status_code = 400


class NotFound(IdentityError):
    status_code = 404


class ConcurrencyConflict(IdentityError):
    """An optimistic write lost a race. Retried internally, never surfaced."""

    status_code = 409


class ServiceUnavailable(IdentityError):
    """Retries for a conflicting write were exhausted."""

    status_code = 503


class InvalidState(IdentityError):
    """A contract violation, e.g. a union on an id without a disjoint-set row."""


class StoreError(IdentityError):
    pass
