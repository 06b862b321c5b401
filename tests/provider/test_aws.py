from datetime import datetime
from typing import Any
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError
from moto import mock_aws

from conftest import utc
from obscost.errors import ConfigError, ProviderQueryError
from obscost.provider.aws import (
    BYTES_PER_GB,
    CLOUDWATCH_SERVICES,
    USAGE_METRICS,
    CloudWatchProvider,
    infer_usage_info,
    is_cloudwatch_service,
)


def client_error(operation: "str") -> "ClientError":
    return ClientError(
        {"Error": {"Code": "AccessDeniedException", "Message": "denied"}},
        operation,
    )


def cost_page(groups: "list[dict[str, Any]]", token: "str | None" = None) -> "dict":
    page: "dict[str, Any]" = {
        "ResultsByTime": [
            {
                "TimePeriod": {"Start": "2024-01-01", "End": "2024-01-02"},
                "Total": {},
                "Groups": groups,
                "Estimated": False,
            }
        ]
    }
    if token:
        page["NextPageToken"] = token
    return page


def cost_group(service: "str", account: "str", amount: "str", quantity: "str") -> "dict":
    return {
        "Keys": [service, account],
        "Metrics": {
            "UnblendedCost": {"Amount": amount, "Unit": "USD"},
            "UsageQuantity": {"Amount": quantity, "Unit": "N/A"},
        },
    }


def make_provider(cloudwatch: "Any" = None, ce: "Any" = None) -> "CloudWatchProvider":
    return CloudWatchProvider(
        region="us-east-1",
        cloudwatch_client=cloudwatch or MagicMock(),
        ce_client=ce or MagicMock(),
    )


class TestCloudWatchProviderInit:
    def test_region_is_required(self) -> "None":
        with pytest.raises(ConfigError):
            CloudWatchProvider(
                region="", cloudwatch_client=MagicMock(), ce_client=MagicMock()
            )

    @pytest.mark.asyncio
    async def test_close_closes_clients(self) -> "None":
        cloudwatch, ce = MagicMock(), MagicMock()
        provider = make_provider(cloudwatch, ce)

        await provider.close()

        cloudwatch.close.assert_called_once()
        ce.close.assert_called_once()


class TestCloudWatchProviderFetchUsage:
    @pytest.mark.asyncio
    async def test_converts_bytes_to_gb(self) -> "None":
        def statistics(**params: "Any") -> "dict":
            if params["MetricName"] == "IncomingBytes":
                return {
                    "Datapoints": [
                        {
                            "Timestamp": utc(2024, 1, 2),
                            "Sum": 2.0 * BYTES_PER_GB,
                            "Unit": "Bytes",
                        }
                    ]
                }
            if params["MetricName"] == "NumberOfAlarms":
                return {
                    "Datapoints": [
                        {"Timestamp": utc(2024, 1, 1), "Sum": 5.0, "Unit": "Count"}
                    ]
                }
            return {"Datapoints": []}

        cloudwatch = MagicMock()
        cloudwatch.get_metric_statistics.side_effect = statistics
        provider = make_provider(cloudwatch)

        records = await provider.fetch_usage(utc(2024, 1, 1), utc(2024, 1, 31))

        by_metric = {r.metric: r for r in records}
        assert set(by_metric) == {"IncomingBytes", "NumberOfAlarms"}
        assert by_metric["IncomingBytes"].value == pytest.approx(2.0)
        assert by_metric["IncomingBytes"].unit == "GB"
        assert by_metric["NumberOfAlarms"].value == 5.0
        assert by_metric["NumberOfAlarms"].unit == "Count"
        assert all(r.service == "CloudWatch" for r in records)
        assert cloudwatch.get_metric_statistics.call_count == len(USAGE_METRICS)

    @pytest.mark.asyncio
    async def test_usage_namespace_gets_dimensions(self) -> "None":
        cloudwatch = MagicMock()
        cloudwatch.get_metric_statistics.return_value = {"Datapoints": []}
        provider = make_provider(cloudwatch)

        await provider.fetch_usage(utc(2024, 1, 1), utc(2024, 1, 31))

        for call in cloudwatch.get_metric_statistics.call_args_list:
            params = call.kwargs
            assert params["Period"] == 86400
            assert params["Statistics"] == ["Sum"]
            assert ("Dimensions" in params) == (params["Namespace"] == "AWS/Usage")

    @pytest.mark.asyncio
    async def test_failed_metric_is_skipped(self) -> "None":
        def statistics(**params: "Any") -> "dict":
            if params["MetricName"] == "NumberOfDashboards":
                raise client_error("GetMetricStatistics")
            return {
                "Datapoints": [
                    {"Timestamp": utc(2024, 1, 1), "Sum": 1.0, "Unit": "Count"}
                ]
            }

        cloudwatch = MagicMock()
        cloudwatch.get_metric_statistics.side_effect = statistics
        provider = make_provider(cloudwatch)

        records = await provider.fetch_usage(utc(2024, 1, 1), utc(2024, 1, 31))

        assert len(records) == len(USAGE_METRICS) - 1
        assert "NumberOfDashboards" not in {r.metric for r in records}

    @pytest.mark.asyncio
    async def test_every_metric_failing_is_an_error(self) -> "None":
        cloudwatch = MagicMock()
        cloudwatch.get_metric_statistics.side_effect = client_error("GetMetricStatistics")
        provider = make_provider(cloudwatch)

        with pytest.raises(ProviderQueryError):
            await provider.fetch_usage(utc(2024, 1, 1), utc(2024, 1, 31))

    @pytest.mark.asyncio
    async def test_unexpected_shape_is_an_error(self) -> "None":
        cloudwatch = MagicMock()
        cloudwatch.get_metric_statistics.return_value = {"Label": "no datapoints key"}
        provider = make_provider(cloudwatch)

        with pytest.raises(ProviderQueryError):
            await provider.fetch_usage(utc(2024, 1, 1), utc(2024, 1, 31))

    @pytest.mark.asyncio
    async def test_against_moto(self, monkeypatch: "pytest.MonkeyPatch") -> "None":
        monkeypatch.delenv("AWS_PROFILE", raising=False)
        with mock_aws():
            provider = CloudWatchProvider(region="us-east-1")
            try:
                records = await provider.fetch_usage(
                    datetime(2024, 1, 1), datetime(2024, 1, 31)
                )
            finally:
                await provider.close()

        assert records == []


class TestCloudWatchProviderFetchCosts:
    @pytest.mark.asyncio
    async def test_builds_cost_records(self) -> "None":
        ce = MagicMock()
        ce.get_cost_and_usage.return_value = cost_page(
            [cost_group("AmazonCloudWatch", "123456789012", "1.2500", "3000")]
        )
        provider = make_provider(ce=ce)

        records = await provider.fetch_costs(utc(2024, 1, 1), utc(2024, 1, 31))

        assert len(records) == 1
        record = records[0]
        assert record.service == "AmazonCloudWatch"
        assert record.account_id == "123456789012"
        assert record.item_name == "Account: 123456789012"
        assert record.cost == pytest.approx(1.25)
        assert record.currency == "USD"
        assert record.period == "Daily"
        assert record.start_time == utc(2024, 1, 1)
        assert record.end_time == utc(2024, 1, 2)
        assert record.region == "us-east-1"
        assert record.quantity == 3000.0
        assert record.usage_unit == "Count"
        assert record.description == "Medium Volume Events"

        params = ce.get_cost_and_usage.call_args.kwargs
        # the end date is inclusive for callers and exclusive for Cost Explorer
        assert params["TimePeriod"] == {"Start": "2024-01-01", "End": "2024-02-01"}
        assert params["Granularity"] == "DAILY"
        assert params["Filter"]["Dimensions"]["Values"] == CLOUDWATCH_SERVICES

    @pytest.mark.asyncio
    async def test_unfiltered_retry(self) -> "None":
        ce = MagicMock()
        ce.get_cost_and_usage.side_effect = [
            cost_page([]),
            cost_page(
                [
                    cost_group("Amazon Elastic Compute Cloud", "111", "9.0", "1"),
                    cost_group("AmazonCloudWatch", "111", "2.0", "1"),
                ]
            ),
        ]
        provider = make_provider(ce=ce)

        records = await provider.fetch_costs(utc(2024, 1, 1), utc(2024, 1, 31))

        assert [r.service for r in records] == ["AmazonCloudWatch"]
        assert records[0].account_id == "111"
        first, second = ce.get_cost_and_usage.call_args_list
        assert "Filter" in first.kwargs
        assert "Filter" not in second.kwargs

    @pytest.mark.asyncio
    async def test_no_data_anywhere(self) -> "None":
        ce = MagicMock()
        ce.get_cost_and_usage.return_value = cost_page([])
        provider = make_provider(ce=ce)

        assert await provider.fetch_costs(utc(2024, 1, 1), utc(2024, 1, 31)) == []
        assert ce.get_cost_and_usage.call_count == 2

    @pytest.mark.asyncio
    async def test_follows_pagination(self) -> "None":
        ce = MagicMock()
        ce.get_cost_and_usage.side_effect = [
            cost_page([cost_group("AmazonCloudWatch", "111", "1", "1")], token="next"),
            cost_page([cost_group("AmazonCloudWatch", "222", "2", "1")]),
        ]
        provider = make_provider(ce=ce)

        records = await provider.fetch_costs(utc(2024, 1, 1), utc(2024, 1, 31))

        assert [r.account_id for r in records] == ["111", "222"]
        assert ce.get_cost_and_usage.call_args_list[1].kwargs["NextPageToken"] == "next"

    @pytest.mark.asyncio
    async def test_client_error(self) -> "None":
        ce = MagicMock()
        ce.get_cost_and_usage.side_effect = client_error("GetCostAndUsage")
        provider = make_provider(ce=ce)

        with pytest.raises(ProviderQueryError) as exc_info:
            await provider.fetch_costs(utc(2024, 1, 1), utc(2024, 1, 31))

        assert "AWS Cost Explorer" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_missing_metric(self) -> "None":
        group = cost_group("AmazonCloudWatch", "111", "1", "1")
        del group["Metrics"]["UsageQuantity"]
        ce = MagicMock()
        ce.get_cost_and_usage.return_value = cost_page([group])
        provider = make_provider(ce=ce)

        with pytest.raises(ProviderQueryError):
            await provider.fetch_costs(utc(2024, 1, 1), utc(2024, 1, 31))


class TestUsageInfo:
    @pytest.mark.parametrize(
        "service, usage, expected",
        [
            ("AmazonCloudWatchLogs", 5000, ("Events", "Log Events")),
            ("AmazonCloudWatchLogs", 10, ("GB", "Log Data")),
            ("CloudWatchMetrics", 1, ("MetricMonths", "Metrics Monitored")),
            ("Dashboard", 1, ("DashboardMonths", "Dashboard Usage")),
            ("Alarm", 1, ("AlarmMonths", "Alarm Monitoring")),
            ("CloudWatch API", 1, ("API-Requests", "API Calls")),
            ("Other", 2_000_000, ("Count", "High Volume Events")),
            ("Other", 5000, ("Count", "Medium Volume Events")),
            ("Other", 5, ("GB", "Data Processing")),
            ("Other", 0.5, ("Units", "Standard Usage")),
        ],
    )
    def test_infer(self, service: "str", usage: "float", expected: "tuple") -> "None":
        assert infer_usage_info(service, usage) == expected

    def test_cloudwatch_service_names(self) -> "None":
        assert is_cloudwatch_service("AmazonCloudWatch")
        assert is_cloudwatch_service("CloudWatch Logs")
        assert not is_cloudwatch_service("Amazon Elastic Compute Cloud")
