from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Mapping

from obscost.errors import UnsupportedReportTypeError


class ReportType(str, Enum):
    USAGE = "usage"
    COST = "cost"
    FULL = "full"

    @classmethod
    def parse(cls, value: "str | ReportType") -> "ReportType":
        """
        converts a user supplied string to a ReportType, failing with
        UnsupportedReportTypeError for anything else.
        """
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise UnsupportedReportTypeError(
                f"unsupported report type: {value}",
                context={"supported": ", ".join(t.value for t in cls)},
            ) from None

    @property
    def includes_usage(self) -> "bool":
        return self in (ReportType.USAGE, ReportType.FULL)

    @property
    def includes_cost(self) -> "bool":
        return self in (ReportType.COST, ReportType.FULL)


@dataclass(frozen=True, slots=True)
class UsageRecord:
    """
    UsageRecord represents a single observed usage data
    point from an observability provider.
    """

    service: "str"
    metric: "str"
    value: "float"
    unit: "str"
    # timezone-aware instant of the data point
    timestamp: "datetime"
    # free-form extras, e.g. account name or license totals
    metadata: "Mapping[str, Any] | None" = None


@dataclass(frozen=True, slots=True)
class CostRecord:
    """
    CostRecord represents one billed line item for one
    account over one period (usually a day).
    """

    service: "str"
    item_name: "str"
    cost: "float"
    # ISO currency code
    currency: "str"
    # period label such as "Daily" or "Monthly"
    period: "str"
    start_time: "datetime"
    end_time: "datetime"
    account_id: "str"
    region: "str" = ""
    quantity: "float" = 0.0
    usage_unit: "str" = ""
    description: "str" = ""

    @property
    def day(self) -> "str":
        return self.start_time.strftime("%Y-%m-%d")


@dataclass(frozen=True, slots=True)
class Report:
    """
    Report is the result of a single report generation run. Record
    tuples and totals are fixed at construction; only custom
    sections can be appended afterwards.
    """

    provider_name: "str"
    start_date: "datetime"
    end_date: "datetime"
    report_type: "ReportType"
    usage_data: "tuple[UsageRecord, ...]" = ()
    cost_data: "tuple[CostRecord, ...]" = ()
    total_cost: "float" = 0.0
    custom_sections: "dict[str, str]" = field(default_factory=dict)

    def append_custom_section(self, title: "str", content: "str") -> "None":
        """
        attaches a named free-text block rendered after the main body.
        Sections are append-only, so a title can only be used once.
        """
        if title in self.custom_sections:
            raise ValueError(f"custom section already present: {title}")
        self.custom_sections[title] = content
