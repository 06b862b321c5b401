from types import MappingProxyType
from typing import Callable, Mapping

from obscost.config import Config
from obscost.errors import UnknownProviderError
from obscost.provider.aws import CloudWatchProvider
from obscost.provider.base import UsageProvider
from obscost.provider.newrelic import NewRelicProvider

ProviderFactory = Callable[[Config], UsageProvider]


def _aws(config: "Config") -> "UsageProvider":
    return CloudWatchProvider(region=config.aws_region, profile=config.aws_profile)


def _newrelic(config: "Config") -> "UsageProvider":
    return NewRelicProvider(
        api_key=config.newrelic_api_key,
        account_id=config.newrelic_account_id,
        region=config.newrelic_region,
    )


# read-only; callers that need other providers pass their own mapping
PROVIDER_FACTORIES: "Mapping[str, ProviderFactory]" = MappingProxyType(
    {
        "aws": _aws,
        "newrelic": _newrelic,
    }
)


def create_provider(
    name: "str",
    config: "Config",
    factories: "Mapping[str, ProviderFactory]" = PROVIDER_FACTORIES,
) -> "UsageProvider":
    """
    builds the provider registered under name (case-insensitive).
    """
    factory = factories.get(name.strip().lower())
    if factory is None:
        raise UnknownProviderError(
            f"provider not found: {name}",
            context={"available": ", ".join(sorted(factories))},
        )
    return factory(config)
