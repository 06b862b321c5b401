from datetime import datetime
from typing import Protocol, Sequence

from obscost.models import CostRecord, UsageRecord


class UsageProvider(Protocol):
    """
    UsageProvider stands as a common protocol that all
    observability vendors must satisfy.

    Providers fetch usage and cost data for a date range and
    return vendor-agnostic record objects. Failed vendor calls
    raise ProviderQueryError; missing data is an empty sequence.
    """

    @property
    def name(self) -> "str": ...

    async def fetch_usage(
        self,
        start: "datetime",
        end: "datetime",
    ) -> "Sequence[UsageRecord]": ...

    async def fetch_costs(
        self,
        start: "datetime",
        end: "datetime",
    ) -> "Sequence[CostRecord]": ...

    async def close(self) -> "None": ...
