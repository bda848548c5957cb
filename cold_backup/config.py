"""Configuration model and helpers for the cold backup tool."""
from __future__ import annotations

from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Dict, Mapping, NamedTuple, Optional
from urllib.parse import urlparse

import yaml

from .utils import mask_sensitive, with_trailing_separator


class ConfigError(Exception):
    """Raised when configuration loading or validation fails."""


class Option(NamedTuple):
    attribute: str
    flag: str
    env_var: str
    default: Optional[str]
    help: str


# Order matters for --help output only.
OPTIONS = (
    Option("fleet_endpoint", "--fleetEndpoint", "FLEETCTL_ENDPOINT", "http://localhost:49153",
           "connect to fleet API at URL"),
    Option("socks_proxy", "--socksProxy", "SOCKS_PROXY", "",
           "connect to fleet via SOCKS proxy at PROXY in IP:PORT format"),
    Option("aws_access_key", "--awsAccessKey", "AWS_ACCESS_KEY", None,
           "connect to AWS API using access key KEY"),
    Option("aws_secret_key", "--awsSecretKey", "AWS_SECRET_KEY", None,
           "connect to AWS API using secret key KEY"),
    Option("data_folder", "--dataFolder", "DATA_FOLDER", "/data/graph.db/",
           "back up from data folder DATA_FOLDER (needs a trailing slash)"),
    Option("target_folder", "--targetFolder", "TARGET_FOLDER", "/data/graph.db.backup",
           "back up to data folder TARGET_FOLDER"),
    Option("s3_domain", "--s3Domain", "S3_DOMAIN", "s3-eu-west-1.amazonaws.com",
           "upload archive to S3 with domain (i.e. hostname) S3_DOMAIN"),
    Option("bucket_name", "--bucketName", "BUCKET_NAME", "com.ft.universalpublishing.backup-data",
           "upload archive to S3 with bucket name BUCKET_NAME"),
    Option("env", "--env", "ENVIRONMENT_TAG", "",
           "connect to environment with tag ENVIRONMENT_TAG"),
    Option("service_name", "--serviceName", "SERVICE_NAME", "neo4j",
           "prefix archive names with SERVICE_NAME"),
    Option("database_unit", "--databaseUnit", "DATABASE_UNIT", "neo4j-red@1.service",
           "stop and restart the fleet unit DATABASE_UNIT around the cold sync"),
    Option("dependent_unit", "--dependentUnit", "DEPENDENT_UNIT", "deployer.service",
           "refuse to stop the database while fleet unit DEPENDENT_UNIT is active"),
)

SECRET_ATTRIBUTES = ("aws_access_key", "aws_secret_key")


@dataclass(frozen=True)
class BackupConfig:
    aws_access_key: str
    aws_secret_key: str
    fleet_endpoint: str = "http://localhost:49153"
    socks_proxy: str = ""
    data_folder: str = "/data/graph.db/"
    target_folder: str = "/data/graph.db.backup"
    s3_domain: str = "s3-eu-west-1.amazonaws.com"
    bucket_name: str = "com.ft.universalpublishing.backup-data"
    env: str = ""
    service_name: str = "neo4j"
    database_unit: str = "neo4j-red@1.service"
    dependent_unit: str = "deployer.service"

    def validate(self) -> None:
        for name in SECRET_ATTRIBUTES:
            if not getattr(self, name):
                raise ConfigError(f"Option '{name}' is required and has no default.")
        parsed = urlparse(self.fleet_endpoint)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ConfigError(f"Fleet endpoint '{self.fleet_endpoint}' is not an http(s) URL.")
        for name in ("data_folder", "target_folder", "bucket_name", "s3_domain",
                     "service_name", "database_unit", "dependent_unit"):
            if not getattr(self, name):
                raise ConfigError(f"Option '{name}' must not be empty.")

    @classmethod
    def from_sources(
        cls,
        file_values: Optional[Mapping[str, object]] = None,
        environ: Optional[Mapping[str, str]] = None,
        overrides: Optional[Mapping[str, Optional[str]]] = None,
    ) -> "BackupConfig":
        """Merge defaults < config file < environment < explicit flags."""

        values: Dict[str, Optional[str]] = {option.attribute: option.default for option in OPTIONS}
        known = set(values)

        for key, value in (file_values or {}).items():
            if key not in known:
                raise ConfigError(f"Unknown configuration key '{key}'.")
            values[key] = None if value is None else str(value)
        for option in OPTIONS:
            if environ and environ.get(option.env_var):
                values[option.attribute] = environ[option.env_var]
        for key, value in (overrides or {}).items():
            if value is not None:
                values[key] = value

        config = cls(**{key: value or "" for key, value in values.items()})
        # The data folder is an rsync source: it must carry a trailing separator.
        config = replace(config, data_folder=with_trailing_separator(config.data_folder))
        config.validate()
        return config

    def describe(self) -> Dict[str, str]:
        secrets = [getattr(self, name) for name in SECRET_ATTRIBUTES]
        result = {}
        for key, value in asdict(self).items():
            if key in SECRET_ATTRIBUTES:
                result[key] = "***" if value else ""
            else:
                result[key] = mask_sensitive(str(value), secrets)
        return result

    def __repr__(self) -> str:
        pairs = ", ".join(f"{key}={value!r}" for key, value in self.describe().items())
        return f"BackupConfig({pairs})"


# ---------------------------------------------------------------------------
def load_config_file(path: Path) -> Dict[str, object]:
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Configuration file '{path}' not found.")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"Configuration file '{path}' is not valid YAML: {exc}") from exc
    if not data:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Configuration file '{path}' must contain a mapping.")
    return data


__all__ = [
    "BackupConfig",
    "ConfigError",
    "OPTIONS",
    "Option",
    "load_config_file",
]
