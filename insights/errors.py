"""
Error types for cl-channel-insights.

Validation problems are reported before any node or database access;
data source failures abort the whole request so a caller never sees a
partially assembled report.
"""


class InsightsError(Exception):
    """Base class for all errors raised by the insights modules."""

    kind = "InsightsError"


class InvalidArgumentError(InsightsError, ValueError):
    """A request parameter is malformed or out of range."""

    kind = "InvalidArgument"


class DataSourceUnavailableError(InsightsError):
    """Channel snapshot or forwarding history could not be fetched."""

    kind = "DataSourceUnavailable"

    def __init__(self, source: str, reason: str):
        self.source = source
        self.reason = reason
        super().__init__(f"{source} unavailable: {reason}")


class RequestCancelled(InsightsError):
    """The request was cancelled before its report was assembled."""

    kind = "RequestCancelled"
