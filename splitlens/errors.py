"""Error taxonomy for the allocation engine.

InvalidState and NotFound are expected conditions that callers handle
(the storefront just shows control). InvariantViolation means stored state
is corrupt and must never be caught and continued. ConcurrencyConflict is
raised when an optimistic write lost a race; the engine retries once before
letting it escape.
"""


class SplitlensError(Exception):
    """Base class for all engine errors."""


class NotFound(SplitlensError):
    pass


class InvalidState(SplitlensError):
    pass


class InvariantViolation(SplitlensError):
    pass


class ConcurrencyConflict(SplitlensError):
    pass
