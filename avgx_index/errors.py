class AvgxError(Exception):
    """Base class for index pipeline failures."""


class FeedUnavailable(AvgxError):
    """An external price/rate feed could not be read (after retries)."""


class EmptyBasketError(AvgxError):
    """A basket has no priced assets to average."""


class InvalidWeightsError(AvgxError):
    """A basket's weights sum to zero."""


class DomainError(AvgxError):
    """Negative operand reached the geometric mean; upstream data is corrupt."""


class PersistenceError(AvgxError):
    """Reading or writing the history/baseline store failed."""
