import csv
import io
import json
from datetime import datetime
from typing import Any, Callable, TextIO

import structlog
from tabulate import tabulate

from obscost.aggregator import CostSummary, sort_usage, summarize_costs
from obscost.errors import UnsupportedOutputFormatError
from obscost.models import CostRecord, Report, UsageRecord
from obscost.text import truncate

logger = structlog.get_logger()

DATE_FORMAT = "%Y-%m-%d"
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
DESCRIPTION_WIDTH = 33

CSV_FIELDS: "list[str]" = [
    "record_type",
    "service",
    "metric",
    "value",
    "unit",
    "timestamp",
    "item_name",
    "cost",
    "currency",
    "period",
    "start_time",
    "end_time",
    "account_id",
    "region",
    "quantity",
    "usage_unit",
    "description",
]


def _money(amount: "float", currency: "str" = "") -> "str":
    return f"{amount:.4f} {currency}".rstrip()


def _quantity(amount: "float", unit: "str" = "") -> "str":
    return f"{amount:.2f} {unit}".rstrip()


def _header(report: "Report") -> "list[str]":
    return [
        f"Report for {report.provider_name}",
        f"Period: {report.start_date.strftime(DATE_FORMAT)} to "
        f"{report.end_date.strftime(DATE_FORMAT)}",
        f"Report Type: {report.report_type.value}",
        "",
        f"Usage data entries: {len(report.usage_data)}",
        f"Cost data entries: {len(report.cost_data)}",
        "",
    ]


def _custom_sections(report: "Report") -> "list[str]":
    lines: "list[str]" = []
    for title, content in report.custom_sections.items():
        lines.extend(["", f"=== {title} ===", "", content])
    return lines


def _currency_breakdown(summary: "CostSummary") -> "list[str]":
    if not summary.is_mixed_currency:
        return []
    lines = ["Totals by currency:"]
    for currency, amount in sorted(summary.currency_totals.items()):
        lines.append(f"  {currency or '(none)':<10} {amount:.4f}")
    return lines


def _table(rows: "list[list[str]]", headers: "list[str]") -> "str":
    return tabulate(
        rows,
        headers=headers,
        tablefmt="simple",
        disable_numparse=True,
        stralign="left",
    )


def render_table(report: "Report") -> "str":
    """
    renders the report as fixed-width tables: usage data, an account
    cost summary with a TOTAL row and a per-account daily breakdown.
    """
    lines = _header(report)

    if report.usage_data:
        rows = [
            [
                usage.service,
                usage.metric,
                f"{usage.value:.4f}",
                usage.unit,
                usage.timestamp.strftime(TIMESTAMP_FORMAT),
            ]
            for usage in sort_usage(report.usage_data)
        ]
        lines.append("Usage Data:")
        lines.append(
            _table(rows, ["Service", "Metric", "Value", "Unit", "Timestamp"])
        )
        lines.append("")

    if report.cost_data:
        summary = summarize_costs(report.cost_data)

        rows = [
            [account.account_id, f"{account.cost:.4f}", account.currency]
            for account in summary.accounts
        ]
        rows.append(["TOTAL", f"{summary.total_cost:.4f}", summary.currency])
        lines.append("Account Cost Summary:")
        lines.append(_table(rows, ["Account ID", "Total Cost", "Currency"]))
        lines.extend(_currency_breakdown(summary))
        lines.append("")

        lines.append("Detailed Cost Breakdown by Account:")
        for account in summary.accounts:
            rows = []
            for bucket in account.days:
                for cost in bucket.records:
                    rows.append(
                        [
                            bucket.day,
                            cost.service,
                            _money(cost.cost, cost.currency),
                            _quantity(cost.quantity, cost.usage_unit),
                            truncate(cost.description, DESCRIPTION_WIDTH),
                        ]
                    )
                rows.append(
                    [
                        bucket.day,
                        "DAILY TOTAL",
                        _money(bucket.cost, bucket.currency),
                        _quantity(bucket.quantity),
                        "",
                    ]
                )
            rows.append(
                [
                    "",
                    "ACCOUNT TOTAL",
                    _money(account.cost, account.currency),
                    _quantity(account.quantity),
                    "",
                ]
            )
            lines.append("")
            lines.append(f"Account ID: {account.account_id}")
            lines.append(
                _table(rows, ["Date", "Service", "Cost", "Usage", "Description"])
            )

    lines.extend(_custom_sections(report))
    return "\n".join(lines) + "\n"


def render_summary(report: "Report") -> "str":
    """
    renders a plain-text grouped summary: one block per account with
    daily subtotals, followed by overall totals.
    """
    rule = "-" * 77
    lines = _header(report)

    if report.usage_data:
        lines.append("=== Usage Data ===")
        lines.append(
            f"{'Service':<20} {'Metric':<20} {'Value':<10} {'Unit':<10} Timestamp"
        )
        lines.append(rule)
        for usage in sort_usage(report.usage_data):
            lines.append(
                f"{truncate(usage.service, 20):<20} "
                f"{truncate(usage.metric, 20):<20} "
                f"{usage.value:<10.2f} "
                f"{truncate(usage.unit, 10):<10} "
                f"{usage.timestamp.strftime(DATE_FORMAT)}"
            )
        lines.append("")

    if report.cost_data:
        summary = summarize_costs(report.cost_data)
        lines.append("=== Cost Data ===")

        for account in summary.accounts:
            lines.append("")
            lines.append(f"=== Account: {account.account_id} ===")
            lines.append(
                f"{'Date':<12} {'Service':<25} {'Cost':<10} {'Usage':<10} "
                f"{'Unit':<20} Description"
            )
            lines.append(rule)
            for bucket in account.days:
                for cost in bucket.records:
                    lines.append(
                        f"{bucket.day:<12} {truncate(cost.service, 25):<25} "
                        f"{cost.cost:<10.4f} {cost.quantity:<10.2f} "
                        f"{truncate(cost.usage_unit, 20):<20} "
                        f"{truncate(cost.description, DESCRIPTION_WIDTH)}".rstrip()
                    )
                lines.append(
                    f"{bucket.day:<12} {'DAILY TOTAL':<25} "
                    f"{bucket.cost:<10.4f} {bucket.quantity:<10.2f} "
                    f"{bucket.currency}".rstrip()
                )
                lines.append(rule)
            lines.append("")
            lines.append(
                f"Account Total: {_money(account.cost, account.currency)} "
                f"(Usage: {account.quantity:.2f} units)"
            )

        lines.append("")
        lines.append("=== Overall Totals ===")
        lines.append(f"{'Account':<20} {'Cost':<10} {'Usage':<10}")
        lines.append("-" * 42)
        for account in summary.accounts:
            lines.append(
                f"{account.account_id:<20} {account.cost:<10.4f} "
                f"{account.quantity:<10.2f}".rstrip()
            )
        lines.append("-" * 42)
        lines.append(
            f"{'GRAND TOTAL':<20} {_money(summary.total_cost, summary.currency)} "
            f"(Usage: {summary.total_quantity:.2f})"
        )
        lines.extend(_currency_breakdown(summary))

    lines.extend(_custom_sections(report))
    return "\n".join(lines) + "\n"


def usage_to_dict(usage: "UsageRecord") -> "dict[str, Any]":
    data: "dict[str, Any]" = {
        "service": usage.service,
        "metric": usage.metric,
        "value": usage.value,
        "unit": usage.unit,
        "timestamp": usage.timestamp.isoformat(),
    }
    if usage.metadata:
        data["metadata"] = dict(usage.metadata)
    return data


def cost_to_dict(cost: "CostRecord") -> "dict[str, Any]":
    data: "dict[str, Any]" = {
        "service": cost.service,
        "itemName": cost.item_name,
        "cost": cost.cost,
        "currency": cost.currency,
        "period": cost.period,
        "startTime": cost.start_time.isoformat(),
        "endTime": cost.end_time.isoformat(),
        "accountId": cost.account_id,
    }
    # optional fields are left out when unset
    if cost.region:
        data["region"] = cost.region
    if cost.quantity:
        data["quantity"] = cost.quantity
    if cost.usage_unit:
        data["usageUnit"] = cost.usage_unit
    if cost.description:
        data["description"] = cost.description
    return data


def report_to_dict(report: "Report") -> "dict[str, Any]":
    summary = summarize_costs(report.cost_data)
    return {
        "provider": report.provider_name,
        "reportType": report.report_type.value,
        "startDate": report.start_date.strftime(DATE_FORMAT),
        "endDate": report.end_date.strftime(DATE_FORMAT),
        "usageData": [usage_to_dict(u) for u in report.usage_data],
        "costData": [cost_to_dict(c) for c in report.cost_data],
        "customSections": dict(report.custom_sections),
        "summary": {
            "usageDataEntries": len(report.usage_data),
            "costDataEntries": len(report.cost_data),
            "accounts": [
                {
                    "accountId": account.account_id,
                    "cost": account.cost,
                    "currency": account.currency,
                }
                for account in summary.accounts
            ],
            "totalCost": summary.total_cost,
            "currency": summary.currency,
            "currencyTotals": dict(summary.currency_totals),
        },
    }


def render_json(report: "Report") -> "str":
    # metadata is opaque, so anything json can't encode falls back to str()
    return json.dumps(report_to_dict(report), indent=2, default=str) + "\n"


def _csv_time(value: "datetime") -> "str":
    return value.isoformat()


def render_csv(report: "Report") -> "str":
    """
    renders one row per usage record and one per cost record; the
    record_type column tells them apart.
    """
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=CSV_FIELDS, lineterminator="\n")
    writer.writeheader()

    for usage in report.usage_data:
        writer.writerow(
            {
                "record_type": "usage",
                "service": usage.service,
                "metric": usage.metric,
                "value": usage.value,
                "unit": usage.unit,
                "timestamp": _csv_time(usage.timestamp),
            }
        )

    for cost in report.cost_data:
        writer.writerow(
            {
                "record_type": "cost",
                "service": cost.service,
                "item_name": cost.item_name,
                "cost": cost.cost,
                "currency": cost.currency,
                "period": cost.period,
                "start_time": _csv_time(cost.start_time),
                "end_time": _csv_time(cost.end_time),
                "account_id": cost.account_id,
                "region": cost.region,
                "quantity": cost.quantity,
                "usage_unit": cost.usage_unit,
                "description": cost.description,
            }
        )

    return buffer.getvalue()


RENDERERS: "dict[str, Callable[[Report], str]]" = {
    "table": render_table,
    "summary": render_summary,
    "json": render_json,
    "csv": render_csv,
}


def resolve_format(output_format: "str") -> "Callable[[Report], str]":
    """
    looks up the renderer for a format name, failing with
    UnsupportedOutputFormatError for unknown names.
    """
    renderer = RENDERERS.get(output_format.strip().lower())
    if renderer is None:
        raise UnsupportedOutputFormatError(
            f"unsupported output format: {output_format}",
            context={"supported": ", ".join(RENDERERS)},
        )
    return renderer


def render(report: "Report", output_format: "str", sink: "TextIO") -> "None":
    """
    serializes the report in the given format and writes it to sink.
    The whole document is built before the first write, so a failure
    leaves the sink untouched.
    """
    renderer = resolve_format(output_format)
    document = renderer(report)
    sink.write(document)
    logger.debug("report_rendered", format=output_format, size=len(document))
