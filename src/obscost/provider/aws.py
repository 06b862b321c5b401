import asyncio
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, TypeVar

import boto3
import structlog
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from obscost.errors import ConfigError, ProviderQueryError
from obscost.models import CostRecord, UsageRecord

logger = structlog.get_logger()

# daily statistics
METRIC_PERIOD_SECONDS = 86400
BYTES_PER_GB = 1024**3

# each tuple is (metric_name, namespace)
USAGE_METRICS: "list[tuple[str, str]]" = [
    ("NumberOfMetricsIngested", "AWS/CloudWatch"),
    ("NumberOfLogsIngested", "AWS/CloudWatch"),
    ("NumberOfDashboards", "AWS/CloudWatch"),
    ("NumberOfAlarms", "AWS/CloudWatch"),
    ("EstimatedBillableSizeBytes", "AWS/Logs"),
    ("IncomingBytes", "AWS/Logs"),
    ("IncomingLogEvents", "AWS/Logs"),
    ("CallCount", "AWS/Usage"),
    ("ThrottleCount", "AWS/Usage"),
    ("PutLogEvents.BytesIngested", "AWS/Logs"),
    ("GetMetricData.DatapointsReturned", "AWS/CloudWatch"),
]

BYTE_METRICS = frozenset(
    {"EstimatedBillableSizeBytes", "IncomingBytes", "PutLogEvents.BytesIngested"}
)

# AWS/Usage metrics are only published per service and call type
USAGE_NAMESPACE_DIMENSIONS: "list[dict[str, str]]" = [
    {"Name": "Service", "Value": "CloudWatch"},
    {"Name": "Type", "Value": "API"},
]

CLOUDWATCH_SERVICES: "list[str]" = [
    "AmazonCloudWatch",
    "CloudWatch",
    "AmazonCloudWatchLogs",
    "CloudWatchLogs",
    "AmazonCloudWatchMetrics",
    "CloudWatchMetrics",
]

# used to pick CloudWatch rows out of an unfiltered Cost Explorer answer
CLOUDWATCH_KEYWORDS = ("cloudwatch", "logs", "metrics")

# Cost Explorer only has an endpoint in us-east-1
COST_EXPLORER_REGION = "us-east-1"


class _Schema(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class Datapoint(_Schema):
    timestamp: "datetime" = Field(alias="Timestamp")
    sum: "float | None" = Field(default=None, alias="Sum")
    unit: "str" = Field(default="", alias="Unit")


class MetricStatistics(_Schema):
    datapoints: "list[Datapoint]" = Field(alias="Datapoints")


class MetricValue(_Schema):
    # Cost Explorer sends amounts as decimal strings
    amount: "float" = Field(alias="Amount")
    unit: "str" = Field(alias="Unit")


class CostGroup(_Schema):
    # [service, linked account], in GroupBy order
    keys: "list[str]" = Field(alias="Keys", min_length=2)
    metrics: "dict[str, MetricValue]" = Field(alias="Metrics")


class DateInterval(_Schema):
    start: "date" = Field(alias="Start")
    end: "date" = Field(alias="End")


class ResultByTime(_Schema):
    time_period: "DateInterval" = Field(alias="TimePeriod")
    total: "dict[str, MetricValue]" = Field(default_factory=dict, alias="Total")
    groups: "list[CostGroup]" = Field(default_factory=list, alias="Groups")


class CostAndUsage(_Schema):
    results_by_time: "list[ResultByTime]" = Field(alias="ResultsByTime")
    next_page_token: "str | None" = Field(default=None, alias="NextPageToken")


SchemaT = TypeVar("SchemaT", bound=BaseModel)


def _validate(schema: "type[SchemaT]", payload: "Any", operation: "str") -> "SchemaT":
    try:
        return schema.model_validate(payload)
    except ValidationError as exc:
        raise ProviderQueryError(
            f"unexpected {operation} response shape",
            context={"errors": exc.error_count(), "detail": exc.errors()[0]["msg"]},
        ) from exc


def _as_utc(value: "datetime") -> "datetime":
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _day_start(value: "date") -> "datetime":
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def infer_usage_info(service_name: "str", usage: "float") -> "tuple[str, str]":
    """
    guesses a usage unit and a short description from the service
    name, falling back to the size of the usage quantity.
    """
    name = service_name.lower()
    if "logs" in name:
        if usage > 1000:
            return "Events", "Log Events"
        return "GB", "Log Data"
    if "metric" in name:
        return "MetricMonths", "Metrics Monitored"
    if "dashboard" in name:
        return "DashboardMonths", "Dashboard Usage"
    if "alarm" in name:
        return "AlarmMonths", "Alarm Monitoring"
    if "api" in name:
        return "API-Requests", "API Calls"
    if usage > 1_000_000:
        return "Count", "High Volume Events"
    if usage > 1000:
        return "Count", "Medium Volume Events"
    if usage > 1:
        return "GB", "Data Processing"
    return "Units", "Standard Usage"


def is_cloudwatch_service(service_name: "str") -> "bool":
    name = service_name.lower()
    return any(keyword in name for keyword in CLOUDWATCH_KEYWORDS)


class CloudWatchProvider:
    """
    CloudWatchProvider implements the UsageProvider protocol for AWS.
    Usage comes from CloudWatch metric statistics and cost from Cost
    Explorer, restricted to CloudWatch services. boto3 is blocking, so
    each call runs in a worker thread and is awaited before the next.
    """

    def __init__(
        self,
        region: "str",
        profile: "str" = "",
        cloudwatch_client: "Any" = None,
        ce_client: "Any" = None,
    ) -> "None":
        if not region:
            raise ConfigError("AWS region is not configured (aws.region or AWS_REGION)")

        self._region = region
        self._profile = profile

        if cloudwatch_client is None or ce_client is None:
            try:
                session = boto3.Session(
                    profile_name=profile or None,
                    region_name=region,
                )
            except BotoCoreError as exc:
                raise ConfigError(
                    f"failed to load AWS config: {exc}",
                    context={"profile": profile},
                ) from exc
            if cloudwatch_client is None:
                cloudwatch_client = session.client("cloudwatch")
            if ce_client is None:
                ce_client = session.client("ce", region_name=COST_EXPLORER_REGION)

        self._cloudwatch = cloudwatch_client
        self._ce = ce_client
        logger.debug("aws_provider_initialized", region=region, profile=profile)

    @property
    def name(self) -> "str":
        return "AWS CloudWatch"

    async def close(self) -> "None":
        """
        closes the underlying boto3 connection pools.
        """
        self._cloudwatch.close()
        self._ce.close()

    async def fetch_usage(
        self,
        start: "datetime",
        end: "datetime",
    ) -> "list[UsageRecord]":
        """
        fetches daily sums for every tracked CloudWatch metric. A
        metric whose query fails is skipped; if every query fails the
        whole fetch fails.
        """
        records: "list[UsageRecord]" = []
        failures = 0

        for metric, namespace in USAGE_METRICS:
            params: "dict[str, Any]" = {
                "Namespace": namespace,
                "MetricName": metric,
                "StartTime": start,
                "EndTime": end,
                "Period": METRIC_PERIOD_SECONDS,
                "Statistics": ["Sum"],
            }
            if namespace == "AWS/Usage":
                params["Dimensions"] = USAGE_NAMESPACE_DIMENSIONS

            try:
                raw = await asyncio.to_thread(
                    self._cloudwatch.get_metric_statistics, **params
                )
            except (ClientError, BotoCoreError) as exc:
                logger.warning(
                    "metric_query_failed",
                    metric=metric,
                    namespace=namespace,
                    error=str(exc),
                )
                failures += 1
                continue

            stats = _validate(MetricStatistics, raw, "GetMetricStatistics")
            for datapoint in stats.datapoints:
                value = datapoint.sum or 0.0
                unit = datapoint.unit
                if unit == "Bytes" or metric in BYTE_METRICS:
                    value = value / BYTES_PER_GB
                    unit = "GB"

                records.append(
                    UsageRecord(
                        service="CloudWatch",
                        metric=metric,
                        value=value,
                        unit=unit,
                        timestamp=_as_utc(datapoint.timestamp),
                    )
                )

        if failures == len(USAGE_METRICS):
            raise ProviderQueryError(
                "every CloudWatch metric query failed",
                context={"region": self._region},
            )

        logger.debug("cloudwatch_usage_done", record_count=len(records))
        return records

    async def fetch_costs(
        self,
        start: "datetime",
        end: "datetime",
    ) -> "list[CostRecord]":
        """
        fetches daily CloudWatch cost per service and linked account.
        When the service filter matches nothing the query is repeated
        unfiltered and CloudWatch rows are picked by name.
        """
        # Cost Explorer treats End as exclusive
        end_exclusive = end + timedelta(days=1)
        params: "dict[str, Any]" = {
            "TimePeriod": {
                "Start": start.strftime("%Y-%m-%d"),
                "End": end_exclusive.strftime("%Y-%m-%d"),
            },
            "Granularity": "DAILY",
            "Metrics": ["UnblendedCost", "UsageQuantity"],
            "GroupBy": [
                {"Type": "DIMENSION", "Key": "SERVICE"},
                {"Type": "DIMENSION", "Key": "LINKED_ACCOUNT"},
            ],
            "Filter": {
                "Dimensions": {"Key": "SERVICE", "Values": CLOUDWATCH_SERVICES},
            },
        }

        logger.info(
            "cost_explorer_query",
            start=params["TimePeriod"]["Start"],
            end=params["TimePeriod"]["End"],
        )
        records = self._to_cost_records(await self._cost_and_usage(params))

        if not records:
            logger.info("cost_explorer_unfiltered_retry")
            del params["Filter"]
            records = [
                record
                for record in self._to_cost_records(await self._cost_and_usage(params))
                if is_cloudwatch_service(record.service)
            ]

        if not records:
            logger.warning(
                "no_cost_data",
                hint="check that Cost Explorer is enabled; data can lag by a day",
            )

        return records

    async def _cost_and_usage(
        self, params: "dict[str, Any]"
    ) -> "list[ResultByTime]":
        results: "list[ResultByTime]" = []
        token: "str | None" = None

        # follow NextPageToken until Cost Explorer stops returning one
        while True:
            call_params = dict(params)
            if token:
                call_params["NextPageToken"] = token

            try:
                raw = await asyncio.to_thread(self._ce.get_cost_and_usage, **call_params)
            except (ClientError, BotoCoreError) as exc:
                raise ProviderQueryError(
                    f"error getting cost data from AWS Cost Explorer: {exc}"
                ) from exc

            page = _validate(CostAndUsage, raw, "GetCostAndUsage")
            results.extend(page.results_by_time)
            token = page.next_page_token
            if not token:
                break

        logger.debug("cost_explorer_results", periods=len(results))
        return results

    def _to_cost_records(
        self, results: "list[ResultByTime]"
    ) -> "list[CostRecord]":
        records: "list[CostRecord]" = []

        for result in results:
            period_start = _day_start(result.time_period.start)
            period_end = _day_start(result.time_period.end)

            total = result.total.get("UnblendedCost")
            if total is not None:
                logger.debug(
                    "cost_explorer_period_total",
                    start=str(result.time_period.start),
                    amount=total.amount,
                    currency=total.unit,
                )

            for group in result.groups:
                service_name, account_id = group.keys[0], group.keys[1]
                cost = group.metrics.get("UnblendedCost")
                usage = group.metrics.get("UsageQuantity")
                if cost is None or usage is None:
                    raise ProviderQueryError(
                        "Cost Explorer group is missing a requested metric",
                        context={"service": service_name, "account": account_id},
                    )

                usage_unit, description = infer_usage_info(service_name, usage.amount)
                records.append(
                    CostRecord(
                        service=service_name,
                        item_name=f"Account: {account_id}",
                        cost=cost.amount,
                        currency=cost.unit,
                        period="Daily",
                        start_time=period_start,
                        end_time=period_end,
                        account_id=account_id,
                        region=self._region,
                        quantity=usage.amount,
                        usage_unit=usage_unit,
                        description=description,
                    )
                )

        return records
