"""Exception hierarchy for the cross-filter engine."""


class CrossfilterError(Exception):
    """Base class for all cross-filter errors."""


class EngineInitializationError(CrossfilterError):
    """Backing engine could not be reached after all connection attempts."""

    def __init__(self, message: str, attempts: int):
        super().__init__(message)
        self.attempts = attempts


class EngineQueryError(CrossfilterError):
    """A query against an initialized backing engine failed."""


class InvalidSelectionError(CrossfilterError, ValueError):
    """Selection gesture does not fit the column or its current bins."""


class PredicateBuildError(CrossfilterError, ValueError):
    """Selection cannot be turned into a predicate (empty or type-mismatched)."""
