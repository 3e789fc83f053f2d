from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor, wait as wait_futures
import json
import logging
import os
import queue
import re
import tempfile
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Tuple
from urllib.parse import quote

import requests

from forecast_schedule import (
    CycleKind,
    ConfigError,
    DiskError,
    DownloaderConfig,
    ExhaustedRetries,
    FetchRejected,
    ForecastFetchError,
    NotYetAvailable,
    ScheduleModel,
    TransientNetworkError,
    build_schedule,
    estimated_schedule,
    full_hour,
    resolve_available,
    utc_now,
)

LOGGER = logging.getLogger("hrrr_fetch.download")
NAME_RE = re.compile(r"[A-Za-z0-9_.]+")
TMP_SUFFIX = ".tmp"

TaskKey = Tuple[str, datetime, int]


def configure_logging(level_name: str | None = None) -> logging.Logger:
    level_name = (level_name or os.getenv("LOG_LEVEL", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)
    logger = logging.getLogger("hrrr_fetch")
    logger.setLevel(level)
    if logger.handlers:
        return logger

    formatter = logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s")
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    stream_handler.setLevel(level)
    logger.addHandler(stream_handler)

    log_file = os.getenv("HRRR_LOG_FILE", "").strip()
    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(path, maxBytes=5_000_000, backupCount=3)
        file_handler.setFormatter(formatter)
        file_handler.setLevel(level)
        logger.addHandler(file_handler)

    logger.propagate = False
    logger.info("Logger configured level=%s file=%s", logging.getLevelName(level), log_file or "disabled")
    return logger


@dataclass(frozen=True)
class BoundingBox:
    north: float
    south: float
    west: float
    east: float

    def validate(self) -> None:
        if not (-90.0 <= self.south < self.north <= 90.0):
            raise ConfigError(f"invalid latitude range south={self.south} north={self.north}")
        if not (-180.0 <= self.west < self.east <= 360.0):
            raise ConfigError(f"invalid longitude range west={self.west} east={self.east}")


@dataclass(frozen=True)
class DataSetRequest:
    """Region, fields and levels of one dataset to keep current.

    Fields and levels are kept sorted so equal requests produce the same
    filter query.
    """

    name: str
    region: str
    bbox: BoundingBox
    fields: Tuple[str, ...]
    levels: Tuple[str, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "fields", tuple(sorted(str(v) for v in self.fields)))
        object.__setattr__(self, "levels", tuple(sorted(str(v) for v in self.levels)))

    @property
    def id(self) -> str:
        return self.name

    @property
    def query(self) -> str:
        parts = [
            f"subregion=&toplat={self.bbox.north}&leftlon={self.bbox.west}"
            f"&rightlon={self.bbox.east}&bottomlat={self.bbox.south}"
        ]
        parts.extend(f"var_{v}=on" for v in self.fields)
        parts.extend(f"{v}=on" for v in self.levels)
        return "&".join(parts)

    def validate(self) -> "DataSetRequest":
        if not NAME_RE.fullmatch(self.name):
            raise ConfigError(f"dataset name must match [A-Za-z0-9_.]+: {self.name!r}")
        if not NAME_RE.fullmatch(self.region):
            raise ConfigError(f"region name must match [A-Za-z0-9_.]+: {self.region!r}")
        self.bbox.validate()
        if not self.fields:
            raise ConfigError(f"dataset {self.name} has no fields")
        if not self.levels:
            raise ConfigError(f"dataset {self.name} has no levels")
        for value in self.fields + self.levels:
            if not value or not re.fullmatch(r"[A-Za-z0-9_\-]+", value):
                raise ConfigError(f"invalid field/level name in dataset {self.name}: {value!r}")
        return self

    def to_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "region": self.region,
            "bbox": {"north": self.bbox.north, "south": self.bbox.south, "west": self.bbox.west, "east": self.bbox.east},
            "fields": list(self.fields),
            "levels": list(self.levels),
        }

    @classmethod
    def from_mapping(cls, values: Dict[str, object]) -> "DataSetRequest":
        try:
            bbox = values["bbox"]
            fields = values["fields"]
            levels = values["levels"]
            if not isinstance(bbox, dict):
                raise ConfigError("bbox must be an object with north/south/west/east")
            if not isinstance(fields, list) or not isinstance(levels, list):
                raise ConfigError("fields and levels must be lists")
            request = cls(
                name=str(values.get("name", values.get("set_name", ""))),
                region=str(values["region"]),
                bbox=BoundingBox(
                    north=float(bbox["north"]),
                    south=float(bbox["south"]),
                    west=float(bbox["west"]),
                    east=float(bbox["east"]),
                ),
                fields=tuple(fields),
                levels=tuple(levels),
            )
        except KeyError as exc:
            raise ConfigError(f"dataset config missing key {exc}") from exc
        except (TypeError, ValueError) as exc:
            if isinstance(exc, ConfigError):
                raise
            raise ConfigError(f"invalid dataset config: {exc}") from exc
        return request.validate()

    @classmethod
    def from_file(cls, path: str | Path) -> "DataSetRequest":
        path = Path(path)
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigError(f"Cannot read dataset config {path}: {exc}") from exc
        if not isinstance(payload, dict):
            raise ConfigError(f"Dataset config {path} is not a JSON object")
        return cls.from_mapping(payload)


def cache_file_name(config: DownloaderConfig, request: DataSetRequest, base: datetime, step: int) -> str:
    return (
        f"{config.provider}-{config.product}-{request.region}-{request.name}"
        f"-{base:%Y%m%d}-{base:%H}+{step:02d}.{config.extension}"
    )


def source_url(config: DownloaderConfig, request: DataSetRequest, base: datetime, step: int) -> str:
    directory = f"/{config.dir_pattern.format(date=base.strftime('%Y%m%d'))}/{config.region}"
    file_name = config.file_pattern.format(hour=base.hour, step=step)
    return f"{config.url}?dir={quote(directory, safe='')}&file={file_name}&{request.query}"


def _safe_unlink(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError:
        pass


def write_cache_file(path: Path, payload: bytes) -> None:
    # partial downloads stay invisible under the final name; one temp file per writer
    tmp_path: Path | None = None
    try:
        with tempfile.NamedTemporaryFile(
            dir=path.parent, prefix=f"{path.name}.", suffix=TMP_SUFFIX, delete=False
        ) as tmp_file:
            tmp_path = Path(tmp_file.name)
            tmp_file.write(payload)
        os.replace(tmp_path, path)
    except OSError as exc:
        if tmp_path is not None:
            _safe_unlink(tmp_path)
        raise DiskError(f"Failed to write {path}: {exc}") from exc


def evict_expired(
    cache_dir: Path, prefix: str, max_age: timedelta, now: datetime
) -> Tuple[List[Path], List[DiskError]]:
    removed: List[Path] = []
    errors: List[DiskError] = []
    if not cache_dir.is_dir():
        return removed, errors
    cutoff = now.timestamp() - max_age.total_seconds()
    for path in sorted(cache_dir.glob(f"{prefix}*")):
        try:
            if not path.is_file() or path.stat().st_mtime >= cutoff:
                continue
            path.unlink()
        except FileNotFoundError:
            continue
        except OSError as exc:
            errors.append(DiskError(f"Failed to evict {path}: {exc}"))
            continue
        removed.append(path)
    return removed, errors


class TaskStatus(Enum):
    PENDING = "pending"
    DOWNLOADING = "downloading"
    DONE = "done"
    ABANDONED = "abandoned"


LIVE_STATUSES = (TaskStatus.PENDING, TaskStatus.DOWNLOADING)


@dataclass(eq=False)
class DownloadTask:
    dataset_id: str
    cycle_base: datetime
    step: int
    expected_ready_at: datetime
    attempts: int = 0
    status: TaskStatus = TaskStatus.PENDING
    last_error: str | None = None

    @property
    def key(self) -> TaskKey:
        return (self.dataset_id, self.cycle_base, self.step)

    @property
    def valid_time(self) -> datetime:
        return self.cycle_base + timedelta(hours=self.step)

    @property
    def failed(self) -> bool:
        return self.status is TaskStatus.PENDING and self.attempts > 0

    def to_dict(self) -> Dict[str, object]:
        return {
            "dataset_id": self.dataset_id,
            "cycle_base": self.cycle_base.isoformat(),
            "step": self.step,
            "expected_ready_at": self.expected_ready_at.isoformat(),
            "attempts": self.attempts,
            "status": self.status.value,
            "last_error": self.last_error,
        }


class DownloadQueue:
    """Deduplicated download tasks keyed by (dataset, cycle base, step).

    At most one entry exists per key, so a key can never be pending or
    downloading twice. Terminal entries stay until pruned and keep later
    resolver passes from re-queuing the same file. Purged tasks that are
    still downloading stay detached until their worker settles them, and
    their key is not handed out again before that.
    """

    def __init__(self, max_retry: int, retry_delay: timedelta) -> None:
        self._max_retry = max_retry
        self._retry_delay = retry_delay
        self._tasks: Dict[TaskKey, DownloadTask] = {}
        self._detached: Dict[TaskKey, DownloadTask] = {}
        self._guard = threading.Lock()

    def __len__(self) -> int:
        with self._guard:
            return len(self._tasks)

    def enqueue(self, dataset_id: str, cycle_base: datetime, step: int, ready_at: datetime) -> bool:
        key = (dataset_id, cycle_base, step)
        with self._guard:
            if key in self._tasks:
                return False
            self._tasks[key] = DownloadTask(dataset_id, cycle_base, step, expected_ready_at=ready_at)
            return True

    def dequeue_ready(self, now: datetime, limit: int | None = None) -> List[DownloadTask]:
        with self._guard:
            ready = [
                t for t in self._tasks.values()
                if t.status is TaskStatus.PENDING
                and t.expected_ready_at <= now
                and t.key not in self._detached
            ]
            ready.sort(key=lambda t: (t.expected_ready_at, t.valid_time, t.dataset_id))
            if limit is not None:
                ready = ready[: max(0, limit)]
            for task in ready:
                task.status = TaskStatus.DOWNLOADING
            return ready

    def _is_current(self, task: DownloadTask) -> bool:
        if self._tasks.get(task.key) is task:
            return True
        if self._detached.get(task.key) is task:
            del self._detached[task.key]
        return False

    def release(self, task: DownloadTask) -> None:
        """Settle a purged task whose worker gave up without a result."""
        with self._guard:
            if self._detached.get(task.key) is task:
                del self._detached[task.key]

    def mark_done(self, task: DownloadTask) -> bool:
        with self._guard:
            if not self._is_current(task) or task.status is not TaskStatus.DOWNLOADING:
                return False
            task.status = TaskStatus.DONE
            task.last_error = None
            return True

    def mark_failed(self, task: DownloadTask, now: datetime, error: str = "") -> bool:
        """Count a failed attempt; returns True only when this abandons the task."""
        with self._guard:
            if not self._is_current(task) or task.status is not TaskStatus.DOWNLOADING:
                return False
            task.attempts += 1
            if task.attempts > self._max_retry:
                task.status = TaskStatus.ABANDONED
                task.last_error = str(ExhaustedRetries(f"gave up after {task.attempts} attempts: {error}"))
                return True
            task.status = TaskStatus.PENDING
            task.expected_ready_at = now + self._retry_delay
            task.last_error = error
            return False

    def abandon(self, task: DownloadTask, error: str = "") -> bool:
        with self._guard:
            if not self._is_current(task) or task.status not in LIVE_STATUSES:
                return False
            task.status = TaskStatus.ABANDONED
            task.last_error = error
            return True

    def purge_dataset(self, dataset_id: str) -> int:
        with self._guard:
            keys = [key for key in self._tasks if key[0] == dataset_id]
            for key in keys:
                task = self._tasks.pop(key)
                if task.status is TaskStatus.DOWNLOADING:
                    self._detached[key] = task
            return len(keys)

    def detached_count(self) -> int:
        with self._guard:
            return len(self._detached)

    def discard_superseded(self, dataset_id: str, desired: Iterable[Tuple[datetime, int]]) -> int:
        desired = list(desired)
        desired_keys = {(dataset_id, base, step) for base, step in desired}
        desired_hours = {base + timedelta(hours=step) for base, step in desired}
        with self._guard:
            keys = [
                key for key, t in self._tasks.items()
                if t.dataset_id == dataset_id
                and t.status is TaskStatus.PENDING
                and key not in desired_keys
                and t.valid_time in desired_hours
            ]
            for key in keys:
                del self._tasks[key]
            return len(keys)

    def prune(self, before: datetime) -> int:
        with self._guard:
            keys = [
                key for key, t in self._tasks.items()
                if t.status not in LIVE_STATUSES and t.cycle_base < before
            ]
            for key in keys:
                del self._tasks[key]
            return len(keys)

    def get(self, dataset_id: str, cycle_base: datetime, step: int) -> DownloadTask | None:
        with self._guard:
            return self._tasks.get((dataset_id, cycle_base, step))

    def tasks(self, dataset_id: str | None = None) -> List[DownloadTask]:
        with self._guard:
            return [t for t in self._tasks.values() if dataset_id is None or t.dataset_id == dataset_id]

    def counts(self) -> Dict[str, int]:
        out = {status.value: 0 for status in TaskStatus}
        with self._guard:
            for task in self._tasks.values():
                out[task.status.value] += 1
        return out

    def live_count(self) -> int:
        with self._guard:
            return sum(1 for t in self._tasks.values() if t.status in LIVE_STATUSES)

    def next_ready_at(self) -> datetime | None:
        with self._guard:
            pending = [t.expected_ready_at for t in self._tasks.values() if t.status is TaskStatus.PENDING]
        return min(pending) if pending else None


def enqueue_available(
    download_queue: DownloadQueue, dataset_id: str, schedule: ScheduleModel, now: datetime
) -> int:
    desired = resolve_available(schedule, now)
    queued = 0
    for base, step in desired:
        if download_queue.enqueue(dataset_id, base, step, schedule.ready_at(base, step)):
            queued += 1
    dropped = download_queue.discard_superseded(dataset_id, desired)
    if queued or dropped:
        LOGGER.debug("Dataset %s queued=%d superseded=%d", dataset_id, queued, dropped)
    return queued


class DatasetRegistry:
    def __init__(
        self,
        download_queue: DownloadQueue,
        schedule: Callable[[], ScheduleModel],
        clock: Callable[[], datetime],
        wake: Callable[[], None] | None = None,
    ) -> None:
        self._queue = download_queue
        self._schedule = schedule
        self._clock = clock
        self._wake = wake or (lambda: None)
        self._requests: Dict[str, DataSetRequest] = {}
        self._guard = threading.Lock()

    def add_dataset(self, request: DataSetRequest) -> str:
        request.validate()
        with self._guard:
            existing = self._requests.get(request.id)
            if existing is not None:
                if existing == request:
                    return request.id
                raise ConfigError(f"Dataset id already registered with a different request: {request.id}")
            self._requests[request.id] = request
            queued = enqueue_available(self._queue, request.id, self._schedule(), self._clock())
        LOGGER.info("Added dataset %s region=%s queued=%d", request.id, request.region, queued)
        self._wake()
        return request.id

    def remove_dataset(self, dataset_id: str) -> None:
        with self._guard:
            if dataset_id not in self._requests:
                raise KeyError(dataset_id)
            del self._requests[dataset_id]
            purged = self._queue.purge_dataset(dataset_id)
        LOGGER.info("Removed dataset %s purged=%d", dataset_id, purged)
        self._wake()

    def refresh(self, now: datetime) -> int:
        queued = 0
        with self._guard:
            schedule = self._schedule()
            for dataset_id in self._requests:
                queued += enqueue_available(self._queue, dataset_id, schedule, now)
        return queued

    def get(self, dataset_id: str) -> DataSetRequest | None:
        with self._guard:
            return self._requests.get(dataset_id)

    def contains(self, dataset_id: str) -> bool:
        with self._guard:
            return dataset_id in self._requests

    def requests(self) -> List[DataSetRequest]:
        with self._guard:
            return [self._requests[k] for k in sorted(self._requests)]


class DownloadListener:
    """Completion interface; override the callbacks you need."""

    def on_file_available(self, dataset_id: str, cycle_base: datetime, step: int, path: Path) -> None:
        pass

    def on_abandoned(self, dataset_id: str, cycle_base: datetime, step: int) -> None:
        pass

    def on_error(self, error: ForecastFetchError) -> None:
        pass


@dataclass(frozen=True)
class CachedFile:
    dataset_id: str
    cycle_base: datetime
    step: int
    path: Path
    created_at: datetime | None = None

    @classmethod
    def describe(cls, dataset_id: str, cycle_base: datetime, step: int, path: Path) -> "CachedFile":
        try:
            created_at = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
        except OSError:
            created_at = None
        return cls(dataset_id, cycle_base, step, path, created_at)

    def to_dict(self) -> Dict[str, object]:
        return {
            "dataset_id": self.dataset_id,
            "cycle_base": self.cycle_base.isoformat(),
            "step": self.step,
            "valid_time": (self.cycle_base + timedelta(hours=self.step)).isoformat(),
            "path": str(self.path),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class ChannelListener(DownloadListener):
    """Forwards engine events to a queue for hosting in another runtime."""

    def __init__(self, channel: "queue.Queue[Tuple[str, object]] | None" = None) -> None:
        self.channel: "queue.Queue[Tuple[str, object]]" = channel if channel is not None else queue.Queue()

    def on_file_available(self, dataset_id: str, cycle_base: datetime, step: int, path: Path) -> None:
        self.channel.put(("file_available", CachedFile.describe(dataset_id, cycle_base, step, path)))

    def on_abandoned(self, dataset_id: str, cycle_base: datetime, step: int) -> None:
        self.channel.put(("abandoned", (dataset_id, cycle_base, step)))

    def on_error(self, error: ForecastFetchError) -> None:
        self.channel.put(("error", error))


class HttpFetcher:
    def __init__(self, timeout: timedelta = timedelta(seconds=60), session: requests.Session | None = None) -> None:
        self._timeout = timeout.total_seconds()
        self._session = session or requests.Session()

    def __call__(self, url: str) -> bytes:
        try:
            response = self._session.get(url, timeout=self._timeout)
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise TransientNetworkError(f"{type(exc).__name__}: {exc}") from exc
        except requests.RequestException as exc:
            raise TransientNetworkError(f"request failed: {exc}") from exc

        status = response.status_code
        if status == 404:
            raise NotYetAvailable(f"not published yet (404): {url}")
        if status == 429 or status >= 500:
            raise TransientNetworkError(f"request failed with code {status}")
        if status >= 400:
            raise FetchRejected(f"request rejected with code {status}")
        return response.content


class DownloadEngine:
    """Periodic evict / refresh / dispatch loop over the registered datasets."""

    def __init__(
        self,
        config: DownloaderConfig,
        schedule: ScheduleModel | None = None,
        fetch: Callable[[str], bytes] | None = None,
        listener: DownloadListener | None = None,
        clock: Callable[[], datetime] | None = None,
        executor: ThreadPoolExecutor | None = None,
    ) -> None:
        self._config = config.validate()
        self._schedule = schedule or estimated_schedule(config)
        self._schedule_built_at: datetime | None = None
        self._fetch = fetch or HttpFetcher(timeout=config.request_timeout)
        self._listener = listener or DownloadListener()
        self._clock = clock or utc_now

        self._cache_dir = Path(config.cache_dir)
        self._cache_dir.mkdir(parents=True, exist_ok=True)
        self._cache_prefix = f"{config.provider}-{config.product}-"

        self._queue = DownloadQueue(config.max_retry, config.retry_delay)
        self._registry = DatasetRegistry(self._queue, lambda: self._schedule, self._clock, self.wake)

        self._executor = executor or ThreadPoolExecutor(
            max_workers=config.max_concurrent_downloads,
            thread_name_prefix="forecast-fetch",
        )
        self._inflight: Dict[Future, DownloadTask] = {}
        self._inflight_guard = threading.Lock()
        self._lifecycle_guard = threading.Lock()
        self._stop_event = threading.Event()
        self._wake_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._closed = False

    @property
    def config(self) -> DownloaderConfig:
        return self._config

    @property
    def schedule(self) -> ScheduleModel:
        return self._schedule

    @property
    def queue(self) -> DownloadQueue:
        return self._queue

    @property
    def cache_dir(self) -> Path:
        return self._cache_dir

    @property
    def datasets(self) -> List[DataSetRequest]:
        return self._registry.requests()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def add_dataset(self, request: DataSetRequest) -> str:
        return self._registry.add_dataset(request)

    def remove_dataset(self, dataset_id: str) -> None:
        self._registry.remove_dataset(dataset_id)

    def replace_schedule(self, schedule: ScheduleModel) -> None:
        self._schedule = schedule
        self._schedule_built_at = self._clock()
        LOGGER.info("Using %s schedule", schedule.source)

    def wake(self) -> None:
        self._wake_event.set()

    # ------------------------------------------------------------------
    # loop steps

    def tick(self, now: datetime | None = None) -> None:
        now = now or self._clock()
        self._maybe_rebuild_schedule(now)
        self.evict(now)
        self.refresh(now)
        self.dispatch(now)

    def evict(self, now: datetime | None = None) -> List[Path]:
        now = now or self._clock()
        removed, errors = evict_expired(self._cache_dir, self._cache_prefix, self._config.max_age, now)
        for path in removed:
            LOGGER.info("Evicted expired cache file %s", path.name)
        for error in errors:
            LOGGER.warning("%s", error)
            self._notify(self._listener.on_error, error)
        return removed

    def refresh(self, now: datetime | None = None) -> int:
        now = now or self._clock()
        queued = self._registry.refresh(now)
        # nothing older than this can be selected by the resolver again
        horizon = timedelta(hours=self._schedule.last_step(CycleKind.EXTENDED) + 1) + self._schedule.max_offset
        self._queue.prune(full_hour(now) - horizon)
        return queued

    def dispatch(self, now: datetime | None = None) -> List[DownloadTask]:
        now = now or self._clock()
        with self._inflight_guard:
            if self._closed:
                return []
            free = self._config.max_concurrent_downloads - len(self._inflight)
        if free <= 0:
            return []

        submitted = []
        for task in self._queue.dequeue_ready(now, limit=free):
            with self._inflight_guard:
                future = None
                if not self._closed:
                    future = self._executor.submit(self._download, task)
                    self._inflight[future] = task
            if future is None:
                if self._queue.abandon(task, "download engine stopped"):
                    self._report_abandoned(task)
                continue
            future.add_done_callback(self._forget)
            submitted.append(task)
        return submitted

    def _forget(self, future: Future) -> None:
        with self._inflight_guard:
            self._inflight.pop(future, None)

    def _maybe_rebuild_schedule(self, now: datetime) -> None:
        if not self._config.observed_schedule:
            return
        built_at = self._schedule_built_at
        if built_at is not None and now - built_at < self._config.schedule_refresh_interval:
            return
        self.replace_schedule(build_schedule(self._config, self._fetch, now))

    # ------------------------------------------------------------------
    # per task

    def _download(self, task: DownloadTask) -> None:
        try:
            self._download_task(task)
        finally:
            self._queue.release(task)

    def _download_task(self, task: DownloadTask) -> None:
        request = self._registry.get(task.dataset_id)
        if request is None:
            LOGGER.debug("Skipping task of removed dataset %s", task.dataset_id)
            return

        name = cache_file_name(self._config, request, task.cycle_base, task.step)
        path = self._cache_dir / name
        if path.is_file():
            LOGGER.info("File %s already downloaded", name)
        elif not self._fetch_to_cache(task, request, path):
            return

        if self._queue.mark_done(task) and self._registry.contains(task.dataset_id):
            self._notify(self._listener.on_file_available, task.dataset_id, task.cycle_base, task.step, path)
        else:
            LOGGER.info("Discarding completion of %s for removed dataset %s", name, task.dataset_id)

    def _fetch_to_cache(self, task: DownloadTask, request: DataSetRequest, path: Path) -> bool:
        url = source_url(self._config, request, task.cycle_base, task.step)
        LOGGER.info("Downloading %s attempt=%d", path.name, task.attempts + 1)
        try:
            payload = self._fetch(url)
            if not payload:
                raise NotYetAvailable(f"empty response for {path.name}")
            write_cache_file(path, payload)
        except NotYetAvailable as exc:
            LOGGER.debug("%s not available yet: %s", path.name, exc)
            self._retry(task, exc)
            return False
        except TransientNetworkError as exc:
            LOGGER.info("%s transient failure: %s", path.name, exc)
            self._retry(task, exc)
            return False
        except FetchRejected as exc:
            LOGGER.warning("%s rejected, abandoning: %s", path.name, exc)
            if self._queue.abandon(task, str(exc)):
                self._report_abandoned(task)
            return False
        except DiskError as exc:
            LOGGER.warning("%s", exc)
            self._notify(self._listener.on_error, exc)
            self._retry(task, exc)
            return False
        except Exception as exc:
            LOGGER.exception("Unexpected failure downloading %s", path.name)
            self._retry(task, exc)
            return False
        LOGGER.info("%d kB saved to %s", len(payload) // 1024, path)
        return True

    def _retry(self, task: DownloadTask, exc: Exception) -> None:
        if self._queue.mark_failed(task, self._clock(), f"{type(exc).__name__}: {exc}"):
            self._report_abandoned(task)
        elif task.status is TaskStatus.PENDING:
            LOGGER.info(
                "step %s+%d retry %d/%d in %d sec",
                task.cycle_base.strftime("%Y-%m-%d %HZ"),
                task.step,
                task.attempts,
                self._config.max_retry,
                self._config.retry_delay.total_seconds(),
            )

    def _report_abandoned(self, task: DownloadTask) -> None:
        LOGGER.warning(
            "step %s+%d of %s permanently failed: %s",
            task.cycle_base.strftime("%Y-%m-%d %HZ"),
            task.step,
            task.dataset_id,
            task.last_error,
        )
        if self._registry.contains(task.dataset_id):
            self._notify(self._listener.on_abandoned, task.dataset_id, task.cycle_base, task.step)

    @staticmethod
    def _notify(callback: Callable[..., None], *args: object) -> None:
        try:
            callback(*args)
        except Exception:
            LOGGER.exception("Download listener %s failed", getattr(callback, "__name__", callback))

    # ------------------------------------------------------------------
    # lifecycle

    def start(self) -> None:
        with self._lifecycle_guard:
            if self._closed:
                raise RuntimeError("download engine was stopped and cannot be restarted")
            if self._thread is not None:
                return
            if self._config.observed_schedule:
                self.replace_schedule(build_schedule(self._config, self._fetch, self._clock()))
            self._stop_event.clear()
            self._thread = threading.Thread(target=self._run, name="forecast-download", daemon=True)
            self._thread.start()
            LOGGER.info("Started download loop interval=%ss", self._config.check_interval.total_seconds())

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception:
                LOGGER.exception("Download tick failed")
            self._wake_event.wait(self._config.check_interval.total_seconds())
            self._wake_event.clear()

    def stop(self, wait: bool = True) -> None:
        """Stop the loop; in-flight fetches are awaited, or cancelled and reported as abandoned."""
        with self._lifecycle_guard:
            self._stop_event.set()
            self._wake_event.set()
            thread = self._thread
            if thread is not None and thread is not threading.current_thread():
                thread.join()
            self._thread = None
            with self._inflight_guard:
                self._closed = True

        if wait:
            self._executor.shutdown(wait=True)
            LOGGER.info("Stopped download loop")
            return

        with self._inflight_guard:
            inflight = dict(self._inflight)
        self._executor.shutdown(wait=False, cancel_futures=True)
        for future, task in inflight.items():
            if future.cancelled() and self._queue.abandon(task, "download cancelled at shutdown"):
                self._report_abandoned(task)
        LOGGER.info("Stopped download loop, cancelled=%d", sum(1 for f in inflight if f.cancelled()))

    def wait_idle(self, timeout: float | None = None) -> bool:
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._inflight_guard:
                futures = list(self._inflight)
            if not futures:
                return True
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            _done, not_done = wait_futures(futures, timeout=remaining)
            if not_done and deadline is not None and time.monotonic() >= deadline:
                return False

    def run_until_idle(self, timeout: float | None = None) -> bool:
        """Work off the queued tasks (retries included) without scheduling new forecast hours."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while not self._stop_event.is_set():
            now = self._clock()
            self.evict(now)
            self.dispatch(now)
            self.wait_idle()
            if self._queue.live_count() == 0:
                return True
            if deadline is not None and time.monotonic() >= deadline:
                return False
            next_ready = self._queue.next_ready_at()
            pause = self._config.check_interval.total_seconds()
            if next_ready is not None:
                pause = min(pause, max(0.0, (next_ready - self._clock()).total_seconds()))
            if pause > 0:
                self._stop_event.wait(pause)
        return self._queue.live_count() == 0

    def status(self) -> Dict[str, object]:
        with self._inflight_guard:
            inflight = len(self._inflight)
        return {
            "running": self.running,
            "schedule": {
                "source": self._schedule.source,
                "regular": list(self._schedule.regular),
                "extended": list(self._schedule.extended),
                "extra_delay_seconds": self._schedule.extra_delay.total_seconds(),
            },
            "datasets": [r.id for r in self._registry.requests()],
            "tasks": self._queue.counts(),
            "inflight": inflight,
            "cache_dir": str(self._cache_dir),
        }
