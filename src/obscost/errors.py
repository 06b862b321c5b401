import warnings
from typing import Any, Mapping

import structlog

logger = structlog.get_logger()


class ObsCostError(Exception):
    """
    ObsCostError is the base class for every error the report
    pipeline raises on purpose. An optional context mapping is
    rendered into the message so the CLI can print it as-is.
    """

    default_message = "report generation failed"

    def __init__(
        self,
        message: "str | None" = None,
        *,
        context: "Mapping[str, Any] | None" = None,
    ) -> "None":
        self.message = message or self.default_message
        self.context: "dict[str, Any]" = dict(context or {})
        super().__init__(self._format_message())

    def _format_message(self) -> "str":
        if not self.context:
            return self.message
        details = ", ".join(f"{k}={v}" for k, v in self.context.items())
        return f"{self.message} ({details})"


class ProviderQueryError(ObsCostError):
    """
    vendor call failed or returned data of an unexpected shape.
    """

    default_message = "provider query failed"


class UnsupportedReportTypeError(ObsCostError):
    default_message = "unsupported report type"


class UnsupportedOutputFormatError(ObsCostError):
    default_message = "unsupported output format"


class UnknownProviderError(ObsCostError):
    default_message = "provider not found"


class ConfigError(ObsCostError):
    default_message = "invalid configuration"


class PartialDataWarning(UserWarning):
    """
    emitted when a secondary data source fails while the primary
    one succeeded. The report is still produced from what we have.
    """


def warn_partial_data(source: "str", error: "Exception") -> "None":
    """
    logs and warns that an optional data source failed; the caller
    carries on with the data it already has.
    """
    logger.warning("partial_data", source=source, error=str(error))
    warnings.warn(f"{source} unavailable: {error}", PartialDataWarning, stacklevel=3)
