import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Mapping

import structlog
import yaml

from obscost.errors import ConfigError

logger = structlog.get_logger()

# searched in order when no --config is given
DEFAULT_CONFIG_PATHS: "tuple[str, ...]" = (
    "./obscost.yaml",
    "./obscost.yml",
    "~/.obscost.yaml",
)

# config field -> environment variables, first set one wins
ENV_VARS: "dict[str, tuple[str, ...]]" = {
    "provider": ("OBSCOST_PROVIDER",),
    "output": ("OBSCOST_OUTPUT",),
    "output_file": ("OBSCOST_OUTPUT_FILE",),
    "aws_region": ("AWS_REGION", "AWS_DEFAULT_REGION"),
    "aws_profile": ("AWS_PROFILE",),
    "newrelic_api_key": ("NEW_RELIC_API_KEY",),
    "newrelic_account_id": ("NEW_RELIC_ACCOUNT_ID",),
    "newrelic_region": ("NEW_RELIC_REGION",),
}

DEFAULT_CONFIG_TEMPLATE = """\
# obscost configuration

# default provider (aws or newrelic)
provider: aws

# output format (table, summary, json or csv)
output: table

# write the report here instead of stdout (optional)
# output_file: report.txt

# AWS CloudWatch provider
aws:
  # region used for CloudWatch metrics (e.g. us-east-1)
  region: us-east-1
  # shared credentials profile (optional)
  profile: default

# New Relic provider
newrelic:
  # your New Relic account id
  account_id: YOUR_ACCOUNT_ID
  # us or eu
  region: us
  # the API key is best set through the environment:
  #   export NEW_RELIC_API_KEY=your_api_key
  # api_key: YOUR_API_KEY
"""


@dataclass
class Config:
    provider: "str" = ""
    # one of table, summary, json, csv
    output: "str" = "table"
    # empty means stdout
    output_file: "str" = ""

    aws_region: "str" = ""
    aws_profile: "str" = ""

    newrelic_api_key: "str" = ""
    newrelic_account_id: "str" = ""
    newrelic_region: "str" = "us"

    @classmethod
    def from_env(cls, base: "Config | None" = None) -> "Config":
        """
        overlays environment variables on base (or the defaults).
        """
        config = base if base is not None else cls()
        overrides: "dict[str, str]" = {}
        for name, env_names in ENV_VARS.items():
            for env_name in env_names:
                value = os.environ.get(env_name, "")
                if value:
                    overrides[name] = value
                    break
        return replace(config, **overrides)

    @classmethod
    def from_mapping(cls, data: "Mapping[str, Any]") -> "Config":
        """
        builds a Config from the nested YAML layout, e.g.
        {"provider": "aws", "aws": {"region": "us-east-1"}}.
        """
        flat: "dict[str, Any]" = {}
        for key, value in data.items():
            if key in ("aws", "newrelic"):
                if value is None:
                    continue
                if not isinstance(value, Mapping):
                    raise ConfigError(f"section '{key}' must be a mapping")
                for sub_key, sub_value in value.items():
                    flat[f"{key}_{sub_key}"] = sub_value
            else:
                flat[key] = value

        known = {f.name for f in fields(cls)}
        unknown = sorted(set(flat) - known)
        if unknown:
            raise ConfigError(
                "unknown configuration keys",
                context={"keys": ", ".join(unknown)},
            )

        return cls(**{k: "" if v is None else str(v) for k, v in flat.items()})

    @classmethod
    def from_file(cls, path: "str | Path") -> "Config":
        file_path = Path(path).expanduser()
        try:
            raw = file_path.read_text()
        except OSError as exc:
            raise ConfigError(
                f"cannot read configuration file: {exc}",
                context={"path": str(file_path)},
            ) from exc

        try:
            data = yaml.safe_load(raw)
        except yaml.YAMLError as exc:
            raise ConfigError(
                f"invalid YAML: {exc}", context={"path": str(file_path)}
            ) from exc

        if data is None:
            data = {}
        if not isinstance(data, Mapping):
            raise ConfigError(
                "configuration root must be a mapping",
                context={"path": str(file_path)},
            )
        return cls.from_mapping(data)

    @classmethod
    def load(cls, path: "str | None" = None) -> "Config":
        """
        resolves configuration as defaults < YAML file < environment.
        An explicit path must exist; the default locations are optional.
        """
        if path:
            config = cls.from_file(path)
            logger.debug("config_loaded", path=path)
        else:
            config = cls()
            for candidate in DEFAULT_CONFIG_PATHS:
                if Path(candidate).expanduser().is_file():
                    config = cls.from_file(candidate)
                    logger.debug("config_loaded", path=candidate)
                    break
            else:
                logger.debug("config_file_not_found", searched=DEFAULT_CONFIG_PATHS)

        return cls.from_env(config)


def write_default_config(path: "str | Path", force: "bool" = False) -> "Path":
    """
    writes the commented default configuration to path and returns the
    resolved location. Refuses to overwrite unless force is set.
    """
    target = Path(path).expanduser()
    if target.exists() and not force:
        raise ConfigError(
            "configuration file already exists, use --path for another "
            "location or --force to overwrite it",
            context={"path": str(target)},
        )
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(DEFAULT_CONFIG_TEMPLATE)
    except OSError as exc:
        raise ConfigError(
            f"cannot write configuration file: {exc}",
            context={"path": str(target)},
        ) from exc
    return target
