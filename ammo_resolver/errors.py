"""Resolver error taxonomy."""


class ResolverError(Exception):
    """Base class for resolver failures."""

    reason_code = "SYSTEM_ERROR"


class LookupFailure(ResolverError):
    """Raised when the store cannot serve a read (claim, key lookup, candidate fetch)."""

    reason_code = "LOOKUP_FAILURE"


class PersistenceFailure(ResolverError):
    """Raised when a write to the store fails (linkage, product creation, status update)."""

    reason_code = "PERSISTENCE_FAILURE"


class IdentityKeyConflict(PersistenceFailure):
    """Raised when a new canonical product's identity key is already taken."""

    def __init__(self, identity_key: str, message: str = ""):
        super().__init__(message or f"Identity key {identity_key} already exists")
        self.identity_key = identity_key


class ScoringFailure(ResolverError):
    """Raised when a scoring strategy throws while scoring a candidate."""

    reason_code = "SCORING_FAILURE"


class InvalidWeightsError(ResolverError, ValueError):
    """Raised when a weighted strategy is built with weights that do not sum to 1.0."""

    pass
