#!/usr/bin/env python3
from __future__ import annotations

import argparse
from dataclasses import replace
from datetime import datetime
import logging
from pathlib import Path
import sys
import time
from typing import List

from forecast_download import DataSetRequest, DownloadEngine, DownloadListener, configure_logging
from forecast_schedule import ConfigError, DownloaderConfig, ForecastFetchError

LOGGER = logging.getLogger("hrrr_fetch.cli")


class PrintListener(DownloadListener):
    def __init__(self) -> None:
        self.available = 0
        self.abandoned = 0

    def on_file_available(self, dataset_id: str, cycle_base: datetime, step: int, path: Path) -> None:
        self.available += 1
        print(f"{dataset_id} {cycle_base:%Y-%m-%d %HZ}+{step:02d} {path}", flush=True)

    def on_abandoned(self, dataset_id: str, cycle_base: datetime, step: int) -> None:
        self.abandoned += 1
        print(f"{dataset_id} {cycle_base:%Y-%m-%d %HZ}+{step:02d} abandoned", file=sys.stderr, flush=True)

    def on_error(self, error: ForecastFetchError) -> None:
        print(f"error: {error}", file=sys.stderr, flush=True)


def _parse_args(argv: List[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Download the most recent HRRR forecast files for a set of regions.")
    parser.add_argument("datasets", nargs="+", type=Path, help="dataset config JSON files")
    parser.add_argument("--config", type=Path, help="downloader config JSON file (defaults plus HRRR_* env otherwise)")
    parser.add_argument("--cache-dir", type=Path, help="directory for downloaded files")
    parser.add_argument("--observed-schedule", action="store_true", help="derive step offsets from the server listing")
    parser.add_argument("--periodic", action="store_true", help="keep running and follow new forecast cycles")
    parser.add_argument("--log-level", help="logging level (default: LOG_LEVEL env or INFO)")
    return parser.parse_args(argv)


def _load_config(args: argparse.Namespace) -> DownloaderConfig:
    config = DownloaderConfig.from_file(args.config) if args.config else DownloaderConfig.from_env()
    overrides = {}
    if args.cache_dir:
        overrides["cache_dir"] = args.cache_dir
    if args.observed_schedule:
        overrides["observed_schedule"] = True
    return replace(config, **overrides).validate()


def main(argv: List[str] | None = None) -> int:
    args = _parse_args(argv)
    configure_logging(args.log_level)

    try:
        config = _load_config(args)
        requests = [DataSetRequest.from_file(path) for path in args.datasets]
    except ConfigError as exc:
        print(f"config error: {exc}", file=sys.stderr)
        return 2

    listener = PrintListener()
    engine = DownloadEngine(config, listener=listener)
    if config.observed_schedule:
        # builds the observed schedule before datasets resolve against it
        engine.tick()
    for request in requests:
        engine.add_dataset(request)

    if not args.periodic:
        # one pass over the currently available files, retries included
        try:
            engine.run_until_idle()
        except KeyboardInterrupt:
            LOGGER.info("Interrupted")
        finally:
            engine.stop(wait=False)
        LOGGER.info("Done available=%d abandoned=%d", listener.available, listener.abandoned)
        return 1 if listener.abandoned else 0

    engine.start()
    try:
        while engine.running:
            time.sleep(1.0)
    except KeyboardInterrupt:
        LOGGER.info("Interrupted, stopping")
    finally:
        engine.stop(wait=False)
    return 0


if __name__ == "__main__":
    sys.exit(main())
