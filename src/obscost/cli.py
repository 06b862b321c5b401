import argparse
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from obscost.config import Config
from obscost.logging import LOG_FORMATS, LOG_LEVELS
from obscost.models import ReportType
from obscost.renderer import RENDERERS

DATE_FORMAT = "%Y-%m-%d"
DEFAULT_LOOKBACK_DAYS = 30


@dataclass(frozen=True)
class ReportRequest:
    report_type: "ReportType"
    start: "datetime"
    end: "datetime"
    # users idle for longer than this count as inactive licenses
    inactive_days: "int" = 30


def parse_date(value: "str") -> "datetime":
    """
    parses YYYY-MM-DD into a UTC midnight datetime.
    """
    try:
        return datetime.strptime(value, DATE_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        raise argparse.ArgumentTypeError(
            f"invalid date '{value}', expected YYYY-MM-DD"
        ) from None


def _positive_int(value: "str") -> "int":
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid number '{value}'") from None
    if number <= 0:
        raise argparse.ArgumentTypeError("must be greater than zero")
    return number


def build_parser() -> "argparse.ArgumentParser":
    parser = argparse.ArgumentParser(
        prog="obscost",
        description="Usage and cost reports for observability providers",
    )
    parser.add_argument(
        "--config",
        dest="config",
        default=None,
        help="Path to a YAML config file (default: ./obscost.yaml, ~/.obscost.yaml)",
    )
    parser.add_argument(
        "--log-level",
        dest="log_level",
        default=None,
        choices=LOG_LEVELS,
        help="Log level (default: $OBSCOST_LOG_LEVEL or info)",
    )
    parser.add_argument(
        "--log-format",
        dest="log_format",
        default=None,
        choices=LOG_FORMATS,
        help="Log line format (default: $OBSCOST_LOG_FORMAT or console)",
    )

    commands = parser.add_subparsers(dest="command", required=True)

    report = commands.add_parser(
        "report",
        help="Generate a usage and cost report",
        description="Generate a usage and cost report from a provider",
    )
    report.add_argument(
        "-p",
        "--provider",
        dest="provider",
        default=None,
        help="Provider to query (aws, newrelic)",
    )
    report.add_argument(
        "--type",
        dest="report_type",
        default=ReportType.FULL.value,
        choices=[t.value for t in ReportType],
        help="Report type (default: full)",
    )
    report.add_argument(
        "--start-date",
        dest="start_date",
        type=parse_date,
        default=None,
        help=f"Start date YYYY-MM-DD (default: {DEFAULT_LOOKBACK_DAYS} days ago)",
    )
    report.add_argument(
        "--end-date",
        dest="end_date",
        type=parse_date,
        default=None,
        help="End date YYYY-MM-DD (default: today)",
    )
    report.add_argument(
        "-o",
        "--output",
        dest="output",
        default=None,
        choices=list(RENDERERS),
        help="Output format (default: table)",
    )
    report.add_argument(
        "--output-file",
        dest="output_file",
        default=None,
        help="Write the report to this file instead of stdout",
    )
    report.add_argument(
        "--inactive-days",
        dest="inactive_days",
        type=_positive_int,
        default=30,
        help="Days without login before a license counts as inactive (default: 30)",
    )

    config_cmd = commands.add_parser("config", help="Manage configuration")
    config_commands = config_cmd.add_subparsers(dest="config_command", required=True)
    generate = config_commands.add_parser(
        "generate", help="Write a default configuration file"
    )
    generate.add_argument(
        "-f",
        "--path",
        dest="path",
        default="obscost.yaml",
        help="Where to write the file (default: ./obscost.yaml)",
    )
    generate.add_argument(
        "--force",
        action="store_true",
        help="Overwrite an existing file",
    )

    return parser


def parse_args(argv: "list[str] | None" = None) -> "argparse.Namespace":
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "report":
        today = datetime.now(timezone.utc).replace(
            hour=0, minute=0, second=0, microsecond=0
        )
        if args.end_date is None:
            args.end_date = today
        if args.start_date is None:
            args.start_date = args.end_date - timedelta(days=DEFAULT_LOOKBACK_DAYS)
        if args.start_date > args.end_date:
            parser.error("--start-date must not be after --end-date")

    return args


def load_config(args: "argparse.Namespace") -> "Config":
    """
    loads file and environment configuration, then applies flags.
    """
    config = Config.load(args.config)
    if getattr(args, "provider", None):
        config.provider = args.provider
    if getattr(args, "output", None):
        config.output = args.output
    if getattr(args, "output_file", None):
        config.output_file = args.output_file
    return config


def report_request(args: "argparse.Namespace") -> "ReportRequest":
    return ReportRequest(
        report_type=ReportType.parse(args.report_type),
        start=args.start_date,
        end=args.end_date,
        inactive_days=args.inactive_days,
    )
