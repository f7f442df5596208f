"""
Exception taxonomy for the bracket engine and vote delivery.

Bracket errors are programming defects and propagate to the caller.
Delivery and statistics errors are always recovered at the session boundary.
"""


class TournamentError(Exception):
    """Base class for bracket engine errors."""


class InvalidTournamentSize(TournamentError, ValueError):
    """Requested bracket size is not a supported power of two, or no items were given."""


class NoActiveMatch(TournamentError):
    """A winner was selected while no match is playable."""


class AccumulatorFull(TournamentError):
    """The per-session vote queue reached its capacity."""


class DeliveryFailure(Exception):
    """A vote submission to the collector failed."""

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.status_code = status_code


class StatisticsUpdateFailure(Exception):
    """The per-tournament statistics update failed."""

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.status_code = status_code
