from __future__ import annotations

import logging
import os
import threading
from collections import deque
from datetime import datetime
from pathlib import Path
from typing import Deque, Dict, List

from fastapi import Body, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware

from forecast_download import (
    DataSetRequest,
    DownloadEngine,
    CachedFile,
    DownloadListener,
    configure_logging,
)
from forecast_schedule import ConfigError, DownloaderConfig, ForecastFetchError

RECENT_FILES_MAX_ENTRIES = int(os.getenv("RECENT_FILES_MAX_ENTRIES", "512"))
RECENT_ERRORS_MAX_ENTRIES = int(os.getenv("RECENT_ERRORS_MAX_ENTRIES", "64"))
DATASETS_DIR = os.getenv("HRRR_DATASETS_DIR", "").strip()

configure_logging()
LOGGER = logging.getLogger("hrrr_fetch.app")


app = FastAPI(title="HRRR Forecast Fetcher")


def _allowed_cors_origins() -> List[str]:
    if os.getenv("HRRR_ALLOW_ALL_CORS", "").strip() == "1":
        return ["*"]
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if raw:
        return [v.strip() for v in raw.split(",") if v.strip()]
    return [
        "http://127.0.0.1:8000",
        "http://localhost:8000",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_cors_origins(),
    allow_methods=["*"],
    allow_headers=["*"],
)


class RecentFilesListener(DownloadListener):
    """Keeps the latest completions and errors for the status endpoints."""

    def __init__(self, max_files: int = RECENT_FILES_MAX_ENTRIES, max_errors: int = RECENT_ERRORS_MAX_ENTRIES) -> None:
        self._files: Deque[CachedFile] = deque(maxlen=max_files)
        self._abandoned: Deque[Dict[str, object]] = deque(maxlen=max_errors)
        self._errors: Deque[str] = deque(maxlen=max_errors)
        self._guard = threading.Lock()

    def on_file_available(self, dataset_id: str, cycle_base: datetime, step: int, path: Path) -> None:
        with self._guard:
            self._files.append(CachedFile.describe(dataset_id, cycle_base, step, path))

    def on_abandoned(self, dataset_id: str, cycle_base: datetime, step: int) -> None:
        with self._guard:
            self._abandoned.append({"dataset_id": dataset_id, "cycle_base": cycle_base.isoformat(), "step": step})

    def on_error(self, error: ForecastFetchError) -> None:
        with self._guard:
            self._errors.append(str(error))

    def files(self, dataset_id: str | None = None) -> List[CachedFile]:
        with self._guard:
            items = list(self._files)
        return [f for f in reversed(items) if dataset_id is None or f.dataset_id == dataset_id]

    def abandoned(self) -> List[Dict[str, object]]:
        with self._guard:
            return list(self._abandoned)

    def errors(self) -> List[str]:
        with self._guard:
            return list(self._errors)


config = DownloaderConfig.from_env()
recent = RecentFilesListener()
engine = DownloadEngine(config, listener=recent)


def _load_configured_datasets() -> None:
    if not DATASETS_DIR:
        return
    for path in sorted(Path(DATASETS_DIR).glob("*.json")):
        try:
            dataset_id = engine.add_dataset(DataSetRequest.from_file(path))
        except ConfigError as exc:
            LOGGER.warning("Skipping dataset config %s: %s", path, exc)
            continue
        LOGGER.info("Loaded dataset %s from %s", dataset_id, path)


@app.on_event("startup")
def _startup() -> None:
    LOGGER.info("App startup cache_dir=%s", config.cache_dir)
    _load_configured_datasets()
    engine.start()


@app.on_event("shutdown")
def _shutdown() -> None:
    LOGGER.info("App shutdown")
    engine.stop(wait=False)


@app.get("/api/datasets")
def list_datasets() -> Dict[str, object]:
    return {"datasets": [r.to_dict() for r in engine.datasets]}


@app.post("/api/datasets")
def add_dataset(payload: Dict[str, object] = Body(...)) -> Dict[str, object]:
    try:
        request = DataSetRequest.from_mapping(payload)
        dataset_id = engine.add_dataset(request)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"ok": True, "dataset_id": dataset_id}


@app.delete("/api/datasets/{dataset_id}")
def remove_dataset(dataset_id: str) -> Dict[str, object]:
    try:
        engine.remove_dataset(dataset_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=f"Unknown dataset_id: {dataset_id}") from exc
    return {"ok": True, "dataset_id": dataset_id}


@app.get("/api/status")
def status() -> Dict[str, object]:
    payload = engine.status()
    payload["abandoned"] = recent.abandoned()
    payload["errors"] = recent.errors()
    return payload


@app.get("/api/files")
def files(dataset_id: str | None = Query(None), limit: int = Query(50, ge=1, le=RECENT_FILES_MAX_ENTRIES)) -> Dict[str, object]:
    if not isinstance(dataset_id, (str, type(None))):
        dataset_id = getattr(dataset_id, "default", None)
    if not isinstance(limit, int):
        limit = int(getattr(limit, "default", 50))
    if dataset_id is not None and not any(r.id == dataset_id for r in engine.datasets):
        raise HTTPException(status_code=404, detail=f"Unknown dataset_id: {dataset_id}")
    return {"files": [f.to_dict() for f in recent.files(dataset_id)[:limit]]}


@app.get("/health")
def health() -> Dict[str, str]:
    if not engine.running:
        return {"status": "stopped"}
    return {"status": "ok"}
