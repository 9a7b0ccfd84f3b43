"""
Error taxonomy for simulation runs.

Recoverable conditions (a signal that cannot be applied, a ratio whose
denominator is zero) are not exceptions: they are logged and counted,
or resolved to a documented fallback value.
"""


class TradesimError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(TradesimError, ValueError):
    """Raised when a request or analysis config is invalid. No simulation is started."""


class NoHistoricalDataError(TradesimError):
    """Raised when there are no bars to replay for the requested range."""

    def __init__(self, message: str, symbols: list[str] | None = None):
        super().__init__(message)
        self.symbols = symbols or []


class StrategyResolutionError(TradesimError):
    """Raised when a strategy name cannot be resolved to an implementation."""

    def __init__(self, message: str, strategy: str | None = None):
        super().__init__(message)
        self.strategy = strategy


class CollaboratorError(TradesimError):
    """
    Raised when the strategy, fee calculator or data source fails mid-run.

    Aborts the current run only. The original exception is chained as
    ``__cause__``.
    """

    def __init__(self, message: str, collaborator: str, run_id: str | None = None):
        super().__init__(message)
        self.collaborator = collaborator
        self.run_id = run_id
