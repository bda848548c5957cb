"""Command line interface for the cold backup tool."""
from __future__ import annotations

import argparse
import logging
import os
import sys
import time
from datetime import timedelta
from pathlib import Path
from typing import Dict, Iterable, Mapping, Optional

from botocore.exceptions import BotoCoreError

from cold_backup.backup import BackupRunner
from cold_backup.cloud import S3WriterProvider
from cold_backup.config import OPTIONS, BackupConfig, ConfigError, load_config_file
from cold_backup.fleet import FleetHTTPClient, ProxyConfigError, ServiceController, build_http_session

LOGGER = logging.getLogger("cold_backup")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description=(
            "Execute a cold backup of a database unit inside a fleet cluster "
            "and upload it to AWS S3."
        ),
    )
    parser.add_argument("--config", help="Read option values from the YAML file CONFIG.")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="Increase logging verbosity.")
    for option in OPTIONS:
        default = "no default" if option.default is None else repr(option.default)
        parser.add_argument(
            option.flag,
            dest=option.attribute,
            default=None,
            help=f"{option.help} (env {option.env_var}, default {default})",
        )
    return parser


def configure_logging(level: int) -> None:
    log_level = logging.DEBUG if level >= 2 else logging.INFO
    logging.basicConfig(level=log_level, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    # botocore is chatty at INFO.
    for name in ("botocore", "boto3", "urllib3", "s3transfer"):
        logging.getLogger(name).setLevel(logging.WARNING if level < 3 else logging.DEBUG)


def build_config(args: argparse.Namespace, environ: Mapping[str, str]) -> BackupConfig:
    file_values = load_config_file(Path(args.config)) if args.config else {}
    overrides: Dict[str, Optional[str]] = {
        option.attribute: getattr(args, option.attribute) for option in OPTIONS
    }
    return BackupConfig.from_sources(file_values, environ, overrides)


def build_runner(config: BackupConfig) -> BackupRunner:
    session = build_http_session(config.socks_proxy)
    controller = ServiceController(FleetHTTPClient(config.fleet_endpoint, session))
    provider = S3WriterProvider(
        config.aws_access_key,
        config.aws_secret_key,
        config.s3_domain,
        config.bucket_name,
    )
    return BackupRunner(config=config, controller=controller, writer_provider=provider)


def main(argv: Optional[Iterable[str]] = None, environ: Optional[Mapping[str, str]] = None) -> int:
    started = time.monotonic()
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose)
    LOGGER.info("Starting backup operation.")

    try:
        config = build_config(args, os.environ if environ is None else environ)
    except ConfigError as exc:
        LOGGER.error("Configuration error; backup process failed: %s", exc)
        return 1
    LOGGER.info("Configuration: %s", config.describe())

    try:
        runner = build_runner(config)
    except ProxyConfigError as exc:
        LOGGER.critical("Error with SOCKS proxy %s: %s", config.socks_proxy, exc)
        return 1
    except (ValueError, BotoCoreError) as exc:
        LOGGER.critical("Could not set up S3 client for domain %s: %s", config.s3_domain, exc)
        return 1

    result = runner.run()
    if not result.ok:
        return result.exit_code
    LOGGER.info("Backup process complete: duration=%s", timedelta(seconds=time.monotonic() - started))
    return 0


if __name__ == "__main__":
    sys.exit(main())
