from __future__ import annotations

import logging
import os
from functools import lru_cache
from typing import Any, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, status
from pydantic import BaseModel

from sitescan.config import ScanConfig, resolve_settings
from sitescan.monitoring import router as monitoring_router
from sitescan.orchestrator import (
    InvalidTargetError,
    ScanInProgressError,
    ScanOrchestrator,
    UnknownWebsiteError,
)
from sitescan.storage import SqliteScanStore

LOGGER = logging.getLogger(__name__)

APP_TITLE = "Website Security Scan API"
SETTINGS_PATH = os.getenv("SITESCAN_SETTINGS", "/app/config/settings.yaml")

app = FastAPI(title=APP_TITLE)
app.include_router(monitoring_router)


class ScanRequestBody(BaseModel):
    url: Optional[str] = None
    api_key: Optional[str] = None


@lru_cache(maxsize=1)
def get_settings() -> dict[str, Any]:
    return resolve_settings(SETTINGS_PATH)


@lru_cache(maxsize=1)
def get_store() -> SqliteScanStore:
    return SqliteScanStore(get_settings()["paths"]["db_path"])


@lru_cache(maxsize=1)
def get_orchestrator() -> ScanOrchestrator:
    return ScanOrchestrator(get_store(), config=ScanConfig.from_settings(get_settings()))


def current_user(x_user_id: Optional[str] = Header(default=None)) -> int:
    if not x_user_id or not x_user_id.isdigit():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
    return int(x_user_id)


def _require_website(store: SqliteScanStore, website_id: int, user_id: int) -> dict[str, Any]:
    website = store.get_website(website_id, user_id)
    if website is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Website not found")
    return website


@app.post("/api/websites/{website_id}/security-scan")
def start_security_scan(
    website_id: int,
    body: Optional[ScanRequestBody] = None,
    user_id: int = Depends(current_user),
    orchestrator: ScanOrchestrator = Depends(get_orchestrator),
) -> dict:
    body = body or ScanRequestBody()
    try:
        orchestrator.ensure_no_running_scan(website_id, user_id)
        record = orchestrator.scan(
            website_id,
            body.url,
            user_id,
            credentials={"api_key": body.api_key} if body.api_key else None,
        )
    except ScanInProgressError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"message": "Security scan already in progress", "scan_id": exc.scan_id},
        ) from exc
    except UnknownWebsiteError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except InvalidTargetError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return {"summary": record.summary(), "scan": record.to_dict()}


@app.post("/api/websites/{website_id}/security-scan/clear")
def clear_security_scans(
    website_id: int,
    user_id: int = Depends(current_user),
    store: SqliteScanStore = Depends(get_store),
    orchestrator: ScanOrchestrator = Depends(get_orchestrator),
) -> dict:
    _require_website(store, website_id, user_id)
    cleared = orchestrator.clear_running_scans(website_id, user_id)
    return {"message": f"Cleared {len(cleared)} stuck scans", "cleared": cleared}


@app.get("/api/websites/{website_id}/security-scans")
def list_security_scans(
    website_id: int,
    limit: int = Query(default=20, ge=1, le=200),
    user_id: int = Depends(current_user),
    store: SqliteScanStore = Depends(get_store),
) -> list[dict]:
    _require_website(store, website_id, user_id)
    return [record.summary() for record in store.list_scan_records(website_id, user_id, limit=limit)]


@app.get("/api/websites/{website_id}/security-scans/latest")
def latest_security_scan(
    website_id: int,
    user_id: int = Depends(current_user),
    store: SqliteScanStore = Depends(get_store),
) -> dict:
    _require_website(store, website_id, user_id)
    record = store.latest_scan_record(website_id, user_id)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No security scans found")
    return record.to_dict()


@app.get("/api/websites/{website_id}/security-scans/{scan_id}")
def get_security_scan(
    website_id: int,
    scan_id: str,
    user_id: int = Depends(current_user),
    store: SqliteScanStore = Depends(get_store),
) -> dict:
    record = store.get_scan_record(scan_id, user_id)
    if record is None or record.website_id != website_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Security scan not found")
    return record.to_dict()


@app.get("/api/security-scans/stats")
def security_scan_stats(
    user_id: int = Depends(current_user),
    store: SqliteScanStore = Depends(get_store),
) -> dict:
    return store.scan_stats(user_id)
