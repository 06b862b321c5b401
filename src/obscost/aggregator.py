from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Iterable, Sequence

import structlog

from obscost.errors import ObsCostError, ProviderQueryError
from obscost.models import CostRecord, Report, ReportType, UsageRecord
from obscost.provider.base import UsageProvider

logger = structlog.get_logger()

# currency label used when a group holds amounts in more than one currency
MIXED_CURRENCY = "MIXED"


def _currency_label(currencies: "Iterable[str]") -> "str":
    distinct = {c for c in currencies if c}
    if not distinct:
        return ""
    if len(distinct) == 1:
        return distinct.pop()
    return MIXED_CURRENCY


@dataclass(frozen=True, slots=True)
class DayBucket:
    """
    DayBucket holds the cost records of one account that
    started on the same calendar day.
    """

    day: "str"
    records: "tuple[CostRecord, ...]"
    cost: "float"
    quantity: "float"
    currencies: "tuple[str, ...]"

    @property
    def currency(self) -> "str":
        return _currency_label(self.currencies)


@dataclass(frozen=True, slots=True)
class AccountSummary:
    account_id: "str"
    days: "tuple[DayBucket, ...]"
    cost: "float"
    quantity: "float"
    currency: "str"


@dataclass(frozen=True, slots=True)
class CostSummary:
    """
    CostSummary is the account -> day -> line item view of a set of
    cost records, with subtotals at every level.

    Totals are plain sums. When records carry different currencies the
    currency label becomes MIXED and currency_totals holds the amount
    per currency, so mixed amounts are never shown under one code.
    """

    accounts: "tuple[AccountSummary, ...]" = ()
    total_cost: "float" = 0.0
    total_quantity: "float" = 0.0
    currency: "str" = ""
    currency_totals: "dict[str, float]" = field(default_factory=dict)

    @property
    def is_mixed_currency(self) -> "bool":
        return self.currency == MIXED_CURRENCY


def summarize_costs(cost_records: "Iterable[CostRecord]") -> "CostSummary":
    """
    partitions cost records by account id and then by start day,
    computing day, account and grand totals.

    Accounts are ordered lexicographically and days chronologically.
    Records keep their input order inside a day bucket.
    """
    by_account: "dict[str, dict[str, list[CostRecord]]]" = {}
    currency_totals: "dict[str, float]" = {}

    for record in cost_records:
        days = by_account.setdefault(record.account_id, {})
        days.setdefault(record.day, []).append(record)
        currency_totals[record.currency] = (
            currency_totals.get(record.currency, 0.0) + record.cost
        )

    accounts: "list[AccountSummary]" = []
    for account_id in sorted(by_account):
        buckets: "list[DayBucket]" = []
        # "YYYY-MM-DD" strings sort chronologically
        for day in sorted(by_account[account_id]):
            members = by_account[account_id][day]
            buckets.append(
                DayBucket(
                    day=day,
                    records=tuple(members),
                    cost=sum((r.cost for r in members), 0.0),
                    quantity=sum((r.quantity for r in members), 0.0),
                    currencies=tuple(dict.fromkeys(r.currency for r in members)),
                )
            )

        accounts.append(
            AccountSummary(
                account_id=account_id,
                days=tuple(buckets),
                cost=sum((b.cost for b in buckets), 0.0),
                quantity=sum((b.quantity for b in buckets), 0.0),
                currency=_currency_label(c for b in buckets for c in b.currencies),
            )
        )

    summary = CostSummary(
        accounts=tuple(accounts),
        total_cost=sum((a.cost for a in accounts), 0.0),
        total_quantity=sum((a.quantity for a in accounts), 0.0),
        currency=_currency_label(currency_totals),
        currency_totals=currency_totals,
    )

    if summary.is_mixed_currency:
        logger.warning(
            "mixed_currencies",
            currencies=sorted(c for c in currency_totals if c),
        )

    return summary


def sort_usage(usage_records: "Iterable[UsageRecord]") -> "list[UsageRecord]":
    """
    returns usage records ordered oldest first; ties keep input order.
    """
    return sorted(usage_records, key=lambda r: r.timestamp)


class ReportGenerator:
    """
    ReportGenerator pulls raw records from a single provider and
    builds a Report. Usage is fetched before cost and the two
    calls never overlap.
    """

    def __init__(self, provider: "UsageProvider") -> "None":
        self._provider = provider

    async def generate(
        self,
        report_type: "ReportType | str",
        start: "datetime",
        end: "datetime",
    ) -> "Report":
        # validate before any network call so bad input costs nothing
        report_type = ReportType.parse(report_type)
        provider_name = self._provider.name

        usage_data: "tuple[UsageRecord, ...]" = ()
        cost_data: "tuple[CostRecord, ...]" = ()
        total_cost = 0.0

        if report_type.includes_usage:
            logger.info("provider_query_start", provider=provider_name, stage="usage")
            usage_data = tuple(
                await self._query("usage", self._provider.fetch_usage, start, end)
            )

        if report_type.includes_cost:
            logger.info("provider_query_start", provider=provider_name, stage="cost")
            cost_data = tuple(
                await self._query("cost", self._provider.fetch_costs, start, end)
            )
            total_cost = sum((record.cost for record in cost_data), 0.0)

        logger.info(
            "report_generated",
            provider=provider_name,
            report_type=report_type.value,
            usage_entries=len(usage_data),
            cost_entries=len(cost_data),
        )

        return Report(
            provider_name=provider_name,
            start_date=start,
            end_date=end,
            report_type=report_type,
            usage_data=usage_data,
            cost_data=cost_data,
            total_cost=total_cost,
        )

    async def _query(
        self,
        stage: "str",
        fetch: "Callable[[datetime, datetime], Awaitable[Sequence]]",
        start: "datetime",
        end: "datetime",
    ) -> "Sequence":
        try:
            return await fetch(start, end)
        except ProviderQueryError as exc:
            raise ProviderQueryError(
                f"error getting {stage} data: {exc.message}",
                context={"provider": self._provider.name, **exc.context},
            ) from exc
        except ObsCostError:
            raise
        except Exception as exc:
            raise ProviderQueryError(
                f"error getting {stage} data: {exc}",
                context={"provider": self._provider.name},
            ) from exc
