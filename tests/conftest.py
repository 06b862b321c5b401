from datetime import datetime, timezone

import pytest

from obscost.models import CostRecord, UsageRecord


def utc(year: "int", month: "int", day: "int", hour: "int" = 0) -> "datetime":
    return datetime(year, month, day, hour, tzinfo=timezone.utc)


def make_cost(
    account_id: "str" = "111",
    day: "int" = 1,
    cost: "float" = 10.0,
    service: "str" = "AmazonCloudWatch",
    currency: "str" = "USD",
    quantity: "float" = 0.0,
    description: "str" = "",
) -> "CostRecord":
    return CostRecord(
        service=service,
        item_name=f"Account: {account_id}",
        cost=cost,
        currency=currency,
        period="Daily",
        start_time=utc(2024, 1, day),
        end_time=utc(2024, 1, day + 1),
        account_id=account_id,
        quantity=quantity,
        description=description,
    )


def make_usage(
    metric: "str" = "IncomingBytes",
    value: "float" = 1.0,
    timestamp: "datetime | None" = None,
) -> "UsageRecord":
    return UsageRecord(
        service="CloudWatch",
        metric=metric,
        value=value,
        unit="GB",
        timestamp=timestamp or utc(2024, 1, 1),
    )


class FakeProvider:
    """
    in-memory UsageProvider that records the calls made to it.
    """

    def __init__(
        self,
        usage: "list[UsageRecord] | None" = None,
        costs: "list[CostRecord] | None" = None,
        usage_error: "Exception | None" = None,
        cost_error: "Exception | None" = None,
    ) -> "None":
        self.usage = usage or []
        self.costs = costs or []
        self.usage_error = usage_error
        self.cost_error = cost_error
        self.calls: "list[str]" = []
        self.closed = False

    @property
    def name(self) -> "str":
        return "fake"

    async def fetch_usage(
        self, start: "datetime", end: "datetime"
    ) -> "list[UsageRecord]":
        self.calls.append("usage")
        if self.usage_error is not None:
            raise self.usage_error
        return list(self.usage)

    async def fetch_costs(
        self, start: "datetime", end: "datetime"
    ) -> "list[CostRecord]":
        self.calls.append("cost")
        if self.cost_error is not None:
            raise self.cost_error
        return list(self.costs)

    async def close(self) -> "None":
        self.closed = True


@pytest.fixture()
def january() -> "tuple[datetime, datetime]":
    return utc(2024, 1, 1), utc(2024, 1, 31)
