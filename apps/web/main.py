"""FastAPI web application for AppUpdater."""

from datetime import datetime
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException
from pydantic import BaseModel

from updater.manager import UpdateManager
from updater.models import UpdateableApp, UpdateSource

app = FastAPI(
    title="AppUpdater",
    description="Find and apply updates for Homebrew, App Store and Sparkle apps",
    version="0.1.0",
)

_manager: Optional[UpdateManager] = None


def get_manager() -> UpdateManager:
    """Return the process-wide manager, creating it on first use."""
    global _manager
    if _manager is None:
        _manager = UpdateManager()
    return _manager


class UpdateInfo(BaseModel):
    """One available update."""

    name: str
    bundle_id: str
    unique_identifier: str
    source: str
    installed_version: Optional[str] = None
    available_version: Optional[str] = None
    is_pre_release: bool = False
    status: str
    status_message: Optional[str] = None
    progress: float = 0.0

    @classmethod
    def from_update(cls, update: UpdateableApp) -> "UpdateInfo":
        return cls(
            name=update.app.app_name,
            bundle_id=update.app.bundle_identifier,
            unique_identifier=update.unique_identifier,
            source=update.source.value,
            installed_version=update.app.app_version,
            available_version=update.available_version,
            is_pre_release=update.is_pre_release,
            status=update.status.value,
            status_message=update.status_message,
            progress=update.progress,
        )


class StatusResponse(BaseModel):
    """Response model for the current scan state."""

    is_scanning: bool
    last_scan_date: Optional[datetime] = None
    updates: dict[str, list[UpdateInfo]]
    hidden: dict[str, str]


class UpdateRequest(BaseModel):
    """Request model for applying updates."""

    bundle_ids: list[str] = []
    source: Optional[str] = None


class UpdateResponse(BaseModel):
    results: dict[str, bool]


class HideRequest(BaseModel):
    bundle_id: str
    source: str


class UnhideRequest(BaseModel):
    unique_identifier: str


def _parse_source(value: str) -> UpdateSource:
    try:
        return UpdateSource(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown source: {value}")


def _status(manager: UpdateManager) -> StatusResponse:
    return StatusResponse(
        is_scanning=manager.is_scanning,
        last_scan_date=manager.last_scan_date,
        updates={
            source.value: [UpdateInfo.from_update(u) for u in manager.updates_by_source.get(source, [])]
            for source in UpdateSource
        },
        hidden=dict(manager.hidden_updates),
    )


@app.get("/api/status", response_model=StatusResponse)
async def status(manager: UpdateManager = Depends(get_manager)):
    """Return the updates found by the last scan."""
    return _status(manager)


@app.post("/api/scan", response_model=StatusResponse)
async def scan(manager: UpdateManager = Depends(get_manager)):
    """Scan installed apps and return the fresh results."""
    try:
        await manager.scan()
        return _status(manager)
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Error scanning for updates: {str(e)}")


@app.post("/api/update", response_model=UpdateResponse)
async def apply_updates(request: UpdateRequest, manager: UpdateManager = Depends(get_manager)):
    """Apply updates for the given bundle identifiers or a whole source."""
    try:
        if not request.bundle_ids and not request.source:
            raise HTTPException(status_code=400, detail="Specify bundle_ids or source")

        if request.source:
            results = await manager.update_all(_parse_source(request.source))
            return UpdateResponse(results=results)

        results = {}
        for bundle_id in request.bundle_ids:
            target = manager.find_update(bundle_id)
            if target is None:
                raise HTTPException(status_code=404, detail=f"No update available for {bundle_id}")
            results[target.unique_identifier] = await manager.update_app(target)
        return UpdateResponse(results=results)

    except HTTPException:
        # Re-raise HTTP exceptions (don't convert to 500)
        raise
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Error applying updates: {str(e)}")


@app.post("/api/hide", response_model=StatusResponse)
async def hide(request: HideRequest, manager: UpdateManager = Depends(get_manager)):
    """Hide an update until it is unhidden."""
    target = manager.find_update(request.bundle_id, _parse_source(request.source))
    if target is None:
        raise HTTPException(status_code=404, detail=f"No update for {request.bundle_id}")
    manager.hide_update(target)
    return _status(manager)


@app.post("/api/unhide", response_model=StatusResponse)
async def unhide(request: UnhideRequest, manager: UpdateManager = Depends(get_manager)):
    """Stop hiding an update; it returns with the next scan."""
    if not manager.unhide_update(request.unique_identifier):
        raise HTTPException(status_code=404, detail=f"{request.unique_identifier} is not hidden")
    return _status(manager)
