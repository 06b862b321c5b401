import asyncio
import os
import sys
from typing import Mapping, Protocol, TextIO, runtime_checkable

import structlog

from obscost.aggregator import ReportGenerator
from obscost.cli import ReportRequest, load_config, parse_args, report_request
from obscost.config import Config, write_default_config
from obscost.errors import ConfigError, ObsCostError, ProviderQueryError, warn_partial_data
from obscost.logging import setup_logging
from obscost.models import Report
from obscost.provider.factory import PROVIDER_FACTORIES, ProviderFactory, create_provider
from obscost.renderer import render, resolve_format

logger = structlog.get_logger()

LICENSE_SECTION_TITLE = "License Usage Details"


@runtime_checkable
class LicenseReporter(Protocol):
    """
    optional provider capability: a free-text license report that is
    attached to the main report as a custom section.
    """

    async def license_usage_report(self, inactive_days: "int" = 30) -> "str": ...


def write_report(report: "Report", config: "Config", stdout: "TextIO") -> "None":
    """
    renders the report to config.output_file, or to stdout when unset.
    """
    if not config.output_file:
        render(report, config.output, stdout)
        return

    try:
        with open(config.output_file, "w", encoding="utf-8") as sink:
            render(report, config.output, sink)
    except OSError as exc:
        raise ConfigError(
            f"failed to write output file: {exc}",
            context={"path": config.output_file},
        ) from exc
    logger.info("report_written", path=config.output_file, format=config.output)


async def run_report(
    config: "Config",
    request: "ReportRequest",
    factories: "Mapping[str, ProviderFactory]" = PROVIDER_FACTORIES,
    stdout: "TextIO | None" = None,
) -> "Report":
    """
    generates one report with the configured provider and writes it
    out. Input problems are reported before any provider call.
    """
    if not config.provider:
        raise ConfigError(
            "provider is required, use --provider or set it in the config file"
        )
    resolve_format(config.output)

    provider = create_provider(config.provider, config, factories)
    logger.info(
        "report_start",
        provider=provider.name,
        report_type=request.report_type.value,
        start=request.start.date().isoformat(),
        end=request.end.date().isoformat(),
    )

    try:
        report = await ReportGenerator(provider).generate(
            request.report_type, request.start, request.end
        )

        if isinstance(provider, LicenseReporter):
            try:
                details = await provider.license_usage_report(request.inactive_days)
            except ProviderQueryError as exc:
                warn_partial_data("license details", exc)
            else:
                report.append_custom_section(LICENSE_SECTION_TITLE, details)
    finally:
        await provider.close()

    write_report(report, config, stdout or sys.stdout)
    return report


def main(argv: "list[str] | None" = None) -> "None":
    args = parse_args(argv)
    setup_logging(
        args.log_level or os.environ.get("OBSCOST_LOG_LEVEL", "info"),
        args.log_format or os.environ.get("OBSCOST_LOG_FORMAT", "console"),
    )

    try:
        if args.command == "config":
            path = write_default_config(args.path, force=args.force)
            print(f"Configuration file generated at: {path}")
            return

        config = load_config(args)
        asyncio.run(run_report(config, report_request(args)))
    except ObsCostError as exc:
        logger.error("command_failed", command=args.command, error=str(exc))
        raise SystemExit(f"Error: {exc}") from exc


if __name__ == "__main__":
    main()
