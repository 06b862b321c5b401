from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, TypeVar

import httpx
import structlog
from pydantic import BaseModel, ValidationError
from tabulate import tabulate

from obscost.errors import ConfigError, ProviderQueryError, warn_partial_data
from obscost.models import CostRecord, UsageRecord
from obscost.provider import nerdgraph
from obscost.text import truncate

logger = structlog.get_logger()

NERDGRAPH_URLS: "dict[str, str]" = {
    "us": "https://api.newrelic.com/graphql",
    "eu": "https://api.eu.newrelic.com/graphql",
}

# monthly list price per license type, in USD
LICENSE_PRICES: "dict[str, float]" = {
    "User": 99.00,
    "Full platform": 199.00,
    "Basic": 49.00,
    "Core": 499.00,
    "LimitedAccess": 29.00,
}

DEFAULT_LICENSE_TYPE = "User"
ACTIVE_WINDOW = timedelta(days=30)
# stands in for users that never logged in or have an unreadable timestamp
NEVER_ACTIVE = datetime(2000, 1, 1, tzinfo=timezone.utc)

SchemaT = TypeVar("SchemaT", bound=BaseModel)


def _utcnow() -> "datetime":
    return datetime.now(timezone.utc)


def _validate(schema: "type[SchemaT]", payload: "Any", what: "str") -> "SchemaT":
    try:
        return schema.model_validate(payload)
    except ValidationError as exc:
        raise ProviderQueryError(
            f"unexpected NerdGraph {what} response shape",
            context={"errors": exc.error_count(), "detail": exc.errors()[0]["msg"]},
        ) from exc


def _parse_last_active(value: "str | None") -> "datetime":
    if not value:
        return NEVER_ACTIVE
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return NEVER_ACTIVE
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True, slots=True)
class LicenseInfo:
    type: "str"
    total_licenses: "int"
    used_licenses: "int"
    utilization_pct: "float"


@dataclass(frozen=True, slots=True)
class UserLicense:
    user_id: "str"
    user_name: "str"
    email: "str"
    license_type: "str"
    last_active: "datetime"


class NewRelicProvider:
    """
    NewRelicProvider implements the UsageProvider protocol on top of
    the NerdGraph GraphQL API. Data ingest and consumption cost come
    from NRQL queries per account; license usage and cost come from
    the user management API and are treated as secondary data.
    """

    def __init__(
        self,
        api_key: "str",
        account_id: "str" = "",
        region: "str" = "us",
        now: "Callable[[], datetime]" = _utcnow,
    ) -> "None":
        if not api_key:
            raise ConfigError("NEW_RELIC_API_KEY environment variable not set")

        url = NERDGRAPH_URLS.get((region or "us").lower())
        if url is None:
            raise ConfigError(
                f"unknown New Relic region: {region}",
                context={"supported": ", ".join(NERDGRAPH_URLS)},
            )

        self._url = url
        self._account_id = account_id
        self._now = now
        self._client: "httpx.AsyncClient" = httpx.AsyncClient(
            timeout=30.0,
            headers={"API-Key": api_key, "Content-Type": "application/json"},
        )
        # accounts don't change during one run
        self._accounts: "list[nerdgraph.AccountRef] | None" = None

    @property
    def name(self) -> "str":
        return "newrelic"

    async def close(self) -> "None":
        """
        closes the underlying HTTP client.
        """
        await self._client.aclose()

    async def fetch_usage(
        self,
        start: "datetime",
        end: "datetime",
    ) -> "list[UsageRecord]":
        """
        fetches data ingest per product line and appends license usage.
        License data is best effort.
        """
        records = await self._data_usage(start, end)

        try:
            licenses = await self.license_info()
        except ProviderQueryError as exc:
            warn_partial_data("license usage", exc)
            return records

        timestamp = self._now()
        for info in licenses:
            records.append(
                UsageRecord(
                    service="Licenses",
                    metric=f"{info.type} Licenses",
                    value=float(info.used_licenses),
                    unit="Users",
                    timestamp=timestamp,
                    metadata={
                        "totalLicenses": info.total_licenses,
                        "utilizationPct": info.utilization_pct,
                    },
                )
            )
        return records

    async def fetch_costs(
        self,
        start: "datetime",
        end: "datetime",
    ) -> "list[CostRecord]":
        """
        fetches consumption cost per product line and metric, then
        appends license cost. License data is best effort.
        """
        records = await self._consumption_costs(start, end)

        try:
            records.extend(await self._license_costs(start, end))
        except ProviderQueryError as exc:
            warn_partial_data("license cost", exc)

        return records

    async def license_info(self) -> "list[LicenseInfo]":
        """
        counts users per license type; a user counts as used when
        they were active within the last 30 days.
        """
        users = await self.user_licenses()
        now = self._now()

        counts: "dict[str, list[int]]" = {}
        for user in users:
            total_used = counts.setdefault(user.license_type, [0, 0])
            total_used[0] += 1
            if now - user.last_active <= ACTIVE_WINDOW:
                total_used[1] += 1

        return [
            LicenseInfo(
                type=license_type,
                total_licenses=total,
                used_licenses=used,
                utilization_pct=used / total * 100.0,
            )
            for license_type, (total, used) in sorted(counts.items())
        ]

    async def user_licenses(self) -> "list[UserLicense]":
        """
        lists every user of every authentication domain.
        """
        auth = await self._query(
            nerdgraph.AUTH_DOMAINS_QUERY, nerdgraph.AuthDomainsData, "domains"
        )
        domains = (
            auth.actor.organization.authorization_management
            .authentication_domains.authentication_domains
        )
        logger.debug("newrelic_auth_domains", count=len(domains))

        users: "list[UserLicense]" = []
        for domain in domains:
            data = await self._query(
                nerdgraph.USERS_QUERY,
                nerdgraph.UsersData,
                "users",
                variables={"domainId": [domain.id]},
            )
            found = (
                data.actor.organization.user_management
                .authentication_domains.authentication_domains
            )
            if not found:
                logger.warning("newrelic_domain_not_found", domain_id=domain.id)
                continue

            for entry in found:
                for user in entry.users.users:
                    license_type = (
                        user.type.display_name if user.type else None
                    ) or DEFAULT_LICENSE_TYPE
                    users.append(
                        UserLicense(
                            user_id=user.id,
                            user_name=user.name,
                            email=user.email,
                            license_type=license_type,
                            last_active=_parse_last_active(user.last_active),
                        )
                    )

        logger.debug("newrelic_users", count=len(users))
        return users

    async def license_usage_report(self, inactive_days: "int" = 30) -> "str":
        """
        renders a text report of per-user license activity and the
        savings available from removing users inactive for longer
        than inactive_days.
        """
        users = await self.user_licenses()
        now = self._now()
        threshold = now - timedelta(days=inactive_days)

        total_cost = 0.0
        potential_savings = 0.0
        per_type: "dict[str, list[int]]" = {}
        rows: "list[tuple[bool, UserLicense, float]]" = []

        for user in users:
            cost = LICENSE_PRICES.get(user.license_type, 0.0)
            active = user.last_active >= threshold
            total_cost += cost
            if not active:
                potential_savings += cost

            total_inactive = per_type.setdefault(user.license_type, [0, 0])
            total_inactive[0] += 1
            if not active:
                total_inactive[1] += 1
            rows.append((active, user, cost))

        inactive_count = sum(1 for active, _, _ in rows if not active)
        lines = [
            "License Usage Report for New Relic",
            f"Date: {now.strftime('%Y-%m-%d')}",
            "",
            "Summary:",
            f"  Total Users: {len(users)}",
            f"  Active Users: {len(users) - inactive_count}",
            f"  Inactive Users (>{inactive_days} days): {inactive_count}",
            f"  Total License Cost: ${total_cost:.2f}",
            f"  Potential Monthly Savings: ${potential_savings:.2f}",
            "",
            "License Type Breakdown:",
            tabulate(
                [
                    [
                        license_type,
                        str(total),
                        str(inactive),
                        f"${LICENSE_PRICES.get(license_type, 0.0):.2f}",
                        f"${inactive * LICENSE_PRICES.get(license_type, 0.0):.2f}",
                    ]
                    for license_type, (total, inactive) in sorted(per_type.items())
                ],
                headers=["Type", "Total", "Inactive", "Cost Per License", "Potential Savings"],
                tablefmt="simple",
                disable_numparse=True,
            ),
            "",
            "Detailed License Usage:",
        ]

        # inactive users first, then by license type
        rows.sort(key=lambda row: (row[0], row[1].license_type))
        lines.append(
            tabulate(
                [
                    [
                        truncate(user.user_name, 16),
                        truncate(user.email, 22),
                        truncate(user.license_type, 16),
                        user.last_active.strftime("%Y-%m-%d %H:%M:%S"),
                        "Active" if active else "Inactive",
                        f"${cost:.2f}",
                    ]
                    for active, user, cost in rows
                ],
                headers=["Username", "Email", "License Type", "Last Active", "Status", "Cost"],
                tablefmt="simple",
                disable_numparse=True,
            )
        )
        return "\n".join(lines)

    async def _accounts_list(self) -> "list[nerdgraph.AccountRef]":
        if self._accounts is None:
            data = await self._query(
                nerdgraph.ACCOUNTS_QUERY, nerdgraph.AccountsData, "accounts"
            )
            accounts = data.actor.accounts
            if self._account_id:
                accounts = [a for a in accounts if str(a.id) == self._account_id]
                if not accounts:
                    logger.warning(
                        "newrelic_account_not_visible", account_id=self._account_id
                    )
            self._accounts = accounts
            logger.debug("newrelic_accounts", count=len(accounts))
        return self._accounts

    async def _data_usage(
        self, start: "datetime", end: "datetime"
    ) -> "list[UsageRecord]":
        nrql = nerdgraph.DATA_USAGE_NRQL.format(
            since=start.strftime("%Y-%m-%d"), until=end.strftime("%Y-%m-%d")
        )
        records: "list[UsageRecord]" = []

        for account in await self._accounts_list():
            for raw in await self._nrql(account.id, nrql):
                row = _validate(nerdgraph.DataUsageRow, raw, "data usage")
                records.append(
                    UsageRecord(
                        service=row.product_line,
                        metric="DataSize",
                        value=row.db_size,
                        unit="GB",
                        # the sum covers the whole window, stamp it at its end
                        timestamp=end,
                        metadata={
                            "accountId": str(account.id),
                            "accountName": account.name,
                        },
                    )
                )

        if not records:
            logger.info("no_usage_data", provider=self.name)
        return records

    async def _consumption_costs(
        self, start: "datetime", end: "datetime"
    ) -> "list[CostRecord]":
        nrql = nerdgraph.CONSUMPTION_NRQL.format(
            since=start.strftime("%Y-%m-%d"), until=end.strftime("%Y-%m-%d")
        )
        records: "list[CostRecord]" = []

        for account in await self._accounts_list():
            for raw in await self._nrql(account.id, nrql):
                row = _validate(nerdgraph.ConsumptionRow, raw, "consumption")
                metric = row.metric or "Usage"
                records.append(
                    CostRecord(
                        service=row.product_line,
                        item_name=metric,
                        cost=row.cost,
                        # NrConsumption amounts are billed in USD
                        currency="USD",
                        period="Monthly",
                        start_time=start,
                        end_time=end,
                        account_id=str(account.id),
                        usage_unit=row.unit or "Count",
                        description=f"{row.product_line} - {metric} ({account.name})",
                    )
                )

        if not records:
            logger.info("no_cost_data", provider=self.name)
        return records

    async def _license_costs(
        self, start: "datetime", end: "datetime"
    ) -> "list[CostRecord]":
        accounts = await self._accounts_list()
        account_id, account_name = "unknown", "Unknown Account"
        if accounts:
            account_id, account_name = str(accounts[0].id), accounts[0].name

        return [
            CostRecord(
                service="Licenses",
                item_name=f"{info.type} Licenses",
                cost=info.used_licenses * LICENSE_PRICES.get(info.type, 0.0),
                currency="USD",
                period="Monthly",
                start_time=start,
                end_time=end,
                account_id=account_id,
                quantity=float(info.used_licenses),
                usage_unit="Users",
                description=(
                    f"{info.type} Licenses "
                    f"({info.used_licenses}/{info.total_licenses} used) "
                    f"- Account: {account_name}"
                ),
            )
            for info in await self.license_info()
        ]

    async def _nrql(self, account_id: "int", nrql: "str") -> "list[dict[str, Any]]":
        logger.debug("newrelic_nrql", account_id=account_id, nrql=nrql)
        data = await self._query(
            nerdgraph.NRQL_QUERY,
            nerdgraph.NrqlData,
            "nrql",
            variables={"accountId": account_id, "nrql": nrql},
        )
        return data.actor.account.nrql.results

    async def _query(
        self,
        query: "str",
        schema: "type[SchemaT]",
        what: "str",
        variables: "dict[str, Any] | None" = None,
    ) -> "SchemaT":
        body: "dict[str, Any]" = {"query": query}
        if variables:
            body["variables"] = variables

        try:
            resp = await self._client.post(self._url, json=body)
            resp.raise_for_status()
            payload = resp.json()
        except httpx.HTTPError as exc:
            raise ProviderQueryError(
                f"NerdGraph {what} request failed: {exc}"
            ) from exc
        except ValueError as exc:
            raise ProviderQueryError(
                f"NerdGraph {what} response is not valid JSON"
            ) from exc

        envelope = _validate(nerdgraph.GraphQLResponse, payload, what)
        if envelope.errors:
            raise ProviderQueryError(
                f"NerdGraph {what} query returned errors",
                context={"errors": "; ".join(e.message for e in envelope.errors)},
            )
        if envelope.data is None:
            raise ProviderQueryError(f"NerdGraph {what} response has no data")

        return _validate(schema, envelope.data, what)
