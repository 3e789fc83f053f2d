from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Tuple

import numpy as np

ONE_HOUR = timedelta(hours=1)
DEFAULT_URL = "https://nomads.ncep.noaa.gov/cgi-bin/filter_hrrr_2d.pl"
DEFAULT_DIR_URL_PATTERN = "https://nomads.ncep.noaa.gov/pub/data/nccf/com/hrrr/prod/hrrr.${yyyyMMdd}/conus"
LISTING_DATE_TOKEN = "${yyyyMMdd}"
# NOMADS index row (as of 10/2024):
# <tr><td><a href="hrrr.t00z.wrfsfcf06.grib2">hrrr.t00z.wrfsfcf06.grib2</a></td><td align="right">21-Oct-2024 00:53  </td>...
LISTING_ROW_RE = re.compile(
    r'\.grib2">[a-z0-9]+\.t(\d{2})z\.[a-z]+f(\d{2,3})\.grib2[^\d]*(\d+)-([A-Za-z]{3})-(\d{4})\s+(\d{2}):(\d{2})'
)
LOGGER = logging.getLogger("hrrr_fetch.schedule")


class ForecastFetchError(RuntimeError):
    """Base class for forecast fetcher failures."""


class ConfigError(ForecastFetchError, ValueError):
    """Raised for invalid downloader or dataset configuration."""


class ScheduleError(ForecastFetchError):
    """Raised when a schedule cannot be built."""


class ScheduleParseError(ScheduleError):
    """Raised when a directory listing yields no usable schedule samples."""


class NotYetAvailable(ForecastFetchError):
    """The requested forecast file is not published yet."""


class TransientNetworkError(ForecastFetchError):
    """Timeouts, resets and server-side failures worth retrying."""


class FetchRejected(ForecastFetchError):
    """The server rejected the request; retrying will not help."""


class ExhaustedRetries(ForecastFetchError):
    """A download was given up after its last retry."""


class DiskError(ForecastFetchError):
    """Writing or evicting a cache file failed."""


def _seconds(value: float) -> timedelta:
    return timedelta(seconds=float(value))


@dataclass(frozen=True)
class DownloaderConfig:
    """Server, schedule estimate and download policy parameters."""

    provider: str = "noaa"
    product: str = "hrrr"
    region: str = "conus"
    url: str = DEFAULT_URL
    dir_url_pattern: str = DEFAULT_DIR_URL_PATTERN
    dir_pattern: str = "hrrr.{date}"
    file_pattern: str = "hrrr.t{hour:02d}z.wrfsfcf{step:02d}.grib2"
    extension: str = "grib2"

    # schedule estimates: (first minute, last minute, number of steps) per cycle kind
    reg_first: int = 48
    reg_last: int = 84
    reg_len: int = 19
    ext_first: int = 48
    ext_last: int = 108
    ext_len: int = 49
    extended_cycle_hours: int = 6

    delay: timedelta = timedelta(seconds=60)
    check_interval: timedelta = timedelta(seconds=30)
    retry_delay: timedelta = timedelta(seconds=30)
    max_retry: int = 4
    max_age: timedelta = timedelta(hours=2)
    max_concurrent_downloads: int = 2
    request_timeout: timedelta = timedelta(seconds=60)

    observed_schedule: bool = False
    schedule_refresh_interval: timedelta = timedelta(hours=24)
    cache_dir: Path = field(default_factory=lambda: Path("cache") / "hrrr")

    def validate(self) -> "DownloaderConfig":
        for name in ("provider", "product", "region", "extension"):
            if not _NAME_RE.fullmatch(str(getattr(self, name))):
                raise ConfigError(f"{name} must match [A-Za-z0-9_.]+: {getattr(self, name)!r}")
        if LISTING_DATE_TOKEN not in self.dir_url_pattern:
            raise ConfigError(f"dir_url_pattern has no {LISTING_DATE_TOKEN} field")
        for kind, first, last, count in (
            ("regular", self.reg_first, self.reg_last, self.reg_len),
            ("extended", self.ext_first, self.ext_last, self.ext_len),
        ):
            if count < 1:
                raise ConfigError(f"{kind} schedule needs at least one step")
            if first < 0 or last < first:
                raise ConfigError(f"invalid {kind} schedule estimate first={first} last={last}")
        if not 1 <= self.extended_cycle_hours <= 24:
            raise ConfigError(f"extended_cycle_hours out of range: {self.extended_cycle_hours}")
        for name in ("check_interval", "retry_delay", "max_age", "request_timeout", "schedule_refresh_interval"):
            if getattr(self, name) <= timedelta(0):
                raise ConfigError(f"{name} must be positive")
        if self.delay < timedelta(0):
            raise ConfigError("delay must not be negative")
        if self.max_retry < 0:
            raise ConfigError("max_retry must not be negative")
        if self.max_concurrent_downloads < 1:
            raise ConfigError("max_concurrent_downloads must be at least 1")
        return self

    @classmethod
    def from_mapping(cls, values: Dict[str, object]) -> "DownloaderConfig":
        kinds = {f.name: f for f in fields(cls)}
        kwargs: Dict[str, object] = {}
        for key, raw in values.items():
            name = key[: -len("_seconds")] if key.endswith("_seconds") else key
            if name not in kinds:
                raise ConfigError(f"Unknown config key: {key}")
            kwargs[name] = _coerce(name, kinds[name].default, raw)
        return cls(**kwargs).validate()

    @classmethod
    def from_file(cls, path: str | Path) -> "DownloaderConfig":
        path = Path(path)
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigError(f"Cannot read config {path}: {exc}") from exc
        if not isinstance(payload, dict):
            raise ConfigError(f"Config {path} is not a JSON object")
        return cls.from_mapping(payload)

    @classmethod
    def from_env(cls, prefix: str = "HRRR_", base: "DownloaderConfig | None" = None) -> "DownloaderConfig":
        config = base or cls()
        overrides: Dict[str, object] = {}
        for f in fields(cls):
            is_duration = isinstance(getattr(config, f.name), timedelta)
            env_name = f"{prefix}{f.name.upper()}" + ("_SECONDS" if is_duration else "")
            raw = os.getenv(env_name, "").strip()
            if raw:
                overrides[f.name] = _coerce(f.name, getattr(config, f.name), raw)
        return replace(config, **overrides).validate()


_NAME_RE = re.compile(r"[A-Za-z0-9_.]+")


def _coerce(name: str, default: object, raw: object) -> object:
    try:
        if isinstance(default, bool):
            if isinstance(raw, str):
                return raw.strip().lower() in {"1", "true", "yes", "on"}
            return bool(raw)
        if isinstance(default, timedelta):
            return _seconds(raw)  # type: ignore[arg-type]
        if isinstance(default, int):
            return int(raw)  # type: ignore[arg-type]
        if name == "cache_dir":
            return Path(str(raw))
        return str(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid value for {name}: {raw!r}") from exc


def full_hour(dt: datetime) -> datetime:
    return dt.replace(minute=0, second=0, microsecond=0)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CycleKind(Enum):
    REGULAR = "regular"
    EXTENDED = "extended"


@dataclass(frozen=True)
class ForecastCycle:
    base_hour: datetime
    kind: CycleKind
    last_step: int

    def covers(self, step: int) -> bool:
        return 0 <= step <= self.last_step

    @property
    def steps(self) -> range:
        return range(0, self.last_step + 1)


@dataclass(frozen=True)
class ScheduleModel:
    """Expected publication offsets (minutes after base hour) per forecast step."""

    regular: Tuple[int, ...]
    extended: Tuple[int, ...]
    extra_delay: timedelta = timedelta(0)
    extended_cycle_hours: int = 6
    source: str = "estimated"

    def __post_init__(self) -> None:
        for kind, offsets in ((CycleKind.REGULAR, self.regular), (CycleKind.EXTENDED, self.extended)):
            if not offsets:
                raise ScheduleError(f"{kind.value} schedule is empty")
            for step in range(1, len(offsets)):
                if offsets[step] < offsets[step - 1]:
                    raise ScheduleError(f"{kind.value} schedule not monotonic at step {step}: {offsets[step]}")

    def kind_of(self, base: datetime) -> CycleKind:
        if base.hour % self.extended_cycle_hours == 0:
            return CycleKind.EXTENDED
        return CycleKind.REGULAR

    def offsets(self, kind: CycleKind) -> Tuple[int, ...]:
        return self.extended if kind is CycleKind.EXTENDED else self.regular

    def last_step(self, kind: CycleKind) -> int:
        return len(self.offsets(kind)) - 1

    def cycle(self, base: datetime) -> ForecastCycle:
        kind = self.kind_of(base)
        return ForecastCycle(base_hour=base, kind=kind, last_step=self.last_step(kind))

    def offset(self, base: datetime, step: int) -> int:
        offsets = self.offsets(self.kind_of(base))
        if not 0 <= step < len(offsets):
            raise ScheduleError(f"step {step} outside the {base:%HZ} cycle (0..{len(offsets) - 1})")
        return offsets[step]

    def ready_at(self, base: datetime, step: int) -> datetime:
        return base + self.extra_delay + timedelta(minutes=self.offset(base, step))

    @property
    def max_offset(self) -> timedelta:
        return self.extra_delay + timedelta(minutes=max(self.regular[-1], self.extended[-1]))


@dataclass(frozen=True)
class ScheduleSample:
    cycle_hour: int
    step: int
    minutes: int


def _estimate_offsets(first: int, last: int, count: int) -> Tuple[int, ...]:
    if count == 1:
        return (int(first),)
    return tuple(int(v) for v in np.rint(np.linspace(first, last, count)))


def estimated_schedule(config: DownloaderConfig) -> ScheduleModel:
    """Spread each cycle kind's steps evenly between its first and last offset."""
    config.validate()
    return ScheduleModel(
        regular=_estimate_offsets(config.reg_first, config.reg_last, config.reg_len),
        extended=_estimate_offsets(config.ext_first, config.ext_last, config.ext_len),
        extra_delay=config.delay,
        extended_cycle_hours=config.extended_cycle_hours,
        source="estimated",
    )


def parse_listing(text: str) -> List[ScheduleSample]:
    samples: List[ScheduleSample] = []
    for match in LISTING_ROW_RE.finditer(text):
        cycle_hour = int(match.group(1))
        step = int(match.group(2))
        hour = int(match.group(6))
        minute = int(match.group(7))
        if hour >= cycle_hour:
            minutes = (hour - cycle_hour) * 60 + minute
        else:
            minutes = (hour + 24 - cycle_hour) * 60 + minute
        samples.append(ScheduleSample(cycle_hour=cycle_hour, step=step, minutes=minutes))
    if not samples:
        raise ScheduleParseError("unexpected directory content - no forecast files listed")
    return samples


def _observed_offsets(samples: List[ScheduleSample], count: int, kind: CycleKind) -> Tuple[int, ...]:
    by_step: Dict[int, List[int]] = {}
    for sample in samples:
        if sample.step < count:
            by_step.setdefault(sample.step, []).append(sample.minutes)
    missing = [step for step in range(count) if step not in by_step]
    if missing:
        raise ScheduleParseError(f"insufficient {kind.value} samples, missing steps {missing[:5]}")
    means = np.array([np.mean(by_step[step]) for step in range(count)])
    # a later step can't be published before an earlier one
    return tuple(int(v) for v in np.maximum.accumulate(np.rint(means)))


def observed_schedule(samples: List[ScheduleSample], config: DownloaderConfig) -> ScheduleModel:
    regular = [s for s in samples if s.cycle_hour % config.extended_cycle_hours != 0]
    extended = [s for s in samples if s.cycle_hour % config.extended_cycle_hours == 0]
    return ScheduleModel(
        regular=_observed_offsets(regular, config.reg_len, CycleKind.REGULAR),
        extended=_observed_offsets(extended, config.ext_len, CycleKind.EXTENDED),
        extra_delay=config.delay,
        extended_cycle_hours=config.extended_cycle_hours,
        source="observed",
    )


def listing_url(config: DownloaderConfig, now: datetime) -> str:
    # before noon the current day's listing has too few cycles
    day = now - timedelta(hours=now.hour + 1) if now.hour < 12 else now
    return config.dir_url_pattern.replace(LISTING_DATE_TOKEN, day.strftime("%Y%m%d"))


def build_schedule(
    config: DownloaderConfig,
    fetch: Callable[[str], bytes] | None = None,
    now: datetime | None = None,
) -> ScheduleModel:
    if not config.observed_schedule or fetch is None:
        return estimated_schedule(config)

    url = listing_url(config, now or utc_now())
    try:
        text = fetch(url).decode("utf-8", errors="replace")
        model = observed_schedule(parse_listing(text), config)
    except Exception as exc:
        LOGGER.warning("Observed schedule unavailable url=%s, using estimates: %s", url, exc)
        return estimated_schedule(config)
    LOGGER.info("Observed schedule regular=%s extended=%s", list(model.regular), list(model.extended))
    return model


def latest_published_base(schedule: ScheduleModel, now: datetime) -> datetime | None:
    base = full_hour(now)
    for _ in range(24):
        if schedule.ready_at(base, 0) <= now:
            return base
        base -= ONE_HOUR
    return None


def resolve_available(schedule: ScheduleModel, now: datetime) -> List[Tuple[datetime, int]]:
    """Pick the freshest published (cycle base, step) for every forecast hour.

    Up to three cycles contribute: the current cycle for the steps it already
    published, the previous one (normally complete) for the near-term rest, and
    the last extended cycle for the tail beyond the regular horizon.
    """
    reference = latest_published_base(schedule, now)
    if reference is None:
        return []

    horizon = schedule.last_step(CycleKind.EXTENDED)
    selected: List[Tuple[datetime, int]] = []
    for k in range(horizon + 1):
        hour = reference + timedelta(hours=k)
        for back in range(horizon + 1):
            base = hour - timedelta(hours=back)
            if base > reference:
                continue
            if not schedule.cycle(base).covers(back):
                continue
            if schedule.ready_at(base, back) <= now:
                selected.append((base, back))
                break
    return selected
