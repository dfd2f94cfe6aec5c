"""
Dashboard API Router

FastAPI routes that expose the observation surfaces to the web dashboard:
- Inline log viewers (project card terminals)
- Build history browser per project
- Deploy trigger

The router only drives surfaces; all polling decisions stay in the log
synchronizer. Every route is async so sessions are created on the running
event loop.
"""

import logging
from typing import Any, Dict, Optional, Union

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from .build_client import BuildRef, BuildServiceError
from .log_synchronizer import SessionLifecycleError
from .surfaces import BuildHistoryBrowser, DashboardCoordinator

logger = logging.getLogger("dashboard_api")

router = APIRouter(prefix="/dashboard", tags=["Build Observability"])


# -----------------------------------------------------------------------------
# Request Models
# -----------------------------------------------------------------------------
class ShowViewerRequest(BaseModel):
    """Inputs of a project card log terminal."""
    viewer_id: str = Field(..., min_length=1)
    run_name: Optional[str] = None
    project: Optional[str] = None
    status: str = ""


class OpenHistoryRequest(BaseModel):
    project_name: Optional[str] = None


# -----------------------------------------------------------------------------
# Dependencies
# -----------------------------------------------------------------------------
def get_coordinator(request: Request) -> DashboardCoordinator:
    return request.app.state.coordinator


def _browser_or_404(
    coordinator: DashboardCoordinator,
    project_id: Union[int, str]
) -> BuildHistoryBrowser:
    browser = coordinator.find_browser(project_id)
    if browser is None or not browser.is_open:
        raise HTTPException(status_code=404, detail=f"History for project {project_id} is not open")
    return browser


# -----------------------------------------------------------------------------
# Inline Viewers
# -----------------------------------------------------------------------------
@router.post("/viewers")
async def show_viewer(
    body: ShowViewerRequest,
    coordinator: DashboardCoordinator = Depends(get_coordinator)
) -> Dict[str, Any]:
    """Bind, re-target or update a viewer from the card's current inputs."""
    viewer = coordinator.inline_viewer(body.viewer_id)
    ref = BuildRef(run_name=body.run_name, project=body.project) if body.run_name else None
    viewer.show(ref, body.status)
    return viewer.to_dict()


@router.get("/viewers/{viewer_id}")
async def get_viewer(
    viewer_id: str,
    coordinator: DashboardCoordinator = Depends(get_coordinator)
) -> Dict[str, Any]:
    viewer = coordinator.find_viewer(viewer_id)
    if viewer is None:
        raise HTTPException(status_code=404, detail=f"Viewer not found: {viewer_id}")
    return viewer.to_dict()


@router.delete("/viewers/{viewer_id}")
async def unmount_viewer(
    viewer_id: str,
    coordinator: DashboardCoordinator = Depends(get_coordinator)
) -> Dict[str, Any]:
    coordinator.remove_viewer(viewer_id)
    return {"viewer_id": viewer_id, "unmounted": True}


# -----------------------------------------------------------------------------
# History Browser
# -----------------------------------------------------------------------------
@router.post("/projects/{project_id}/history/open")
async def open_history(
    project_id: int,
    body: Optional[OpenHistoryRequest] = None,
    coordinator: DashboardCoordinator = Depends(get_coordinator)
) -> Dict[str, Any]:
    browser = coordinator.history_browser(project_id, body.project_name if body else None)
    await browser.open()
    return browser.to_dict()


@router.get("/projects/{project_id}/history")
async def get_history(
    project_id: int,
    coordinator: DashboardCoordinator = Depends(get_coordinator)
) -> Dict[str, Any]:
    return _browser_or_404(coordinator, project_id).to_dict()


@router.post("/projects/{project_id}/history/select/{build_id}")
async def select_build(
    project_id: int,
    build_id: int,
    coordinator: DashboardCoordinator = Depends(get_coordinator)
) -> Dict[str, Any]:
    browser = _browser_or_404(coordinator, project_id)
    try:
        browser.select(build_id)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Build not found: {build_id}")
    return browser.to_dict()


@router.post("/projects/{project_id}/history/back")
async def back_to_list(
    project_id: int,
    coordinator: DashboardCoordinator = Depends(get_coordinator)
) -> Dict[str, Any]:
    browser = _browser_or_404(coordinator, project_id)
    browser.back()
    return browser.to_dict()


@router.post("/projects/{project_id}/history/refresh")
async def refresh_history(
    project_id: int,
    coordinator: DashboardCoordinator = Depends(get_coordinator)
) -> Dict[str, Any]:
    browser = _browser_or_404(coordinator, project_id)
    try:
        await browser.refresh()
    except SessionLifecycleError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return browser.to_dict()


@router.delete("/projects/{project_id}/history")
async def close_history(
    project_id: int,
    coordinator: DashboardCoordinator = Depends(get_coordinator)
) -> Dict[str, Any]:
    coordinator.remove_browser(project_id)
    return {"project_id": project_id, "open": False}


# -----------------------------------------------------------------------------
# Deploy
# -----------------------------------------------------------------------------
@router.post("/projects/{project_id}/deploy", status_code=202)
async def deploy_project(
    project_id: int,
    coordinator: DashboardCoordinator = Depends(get_coordinator)
) -> Dict[str, Any]:
    """Start a deployment; its progress is observed through build status."""
    try:
        await coordinator.trigger_deploy(project_id)
    except BuildServiceError as e:
        logger.error(f"Deployment error for project {project_id}: {e}")
        raise HTTPException(status_code=502, detail="Failed to start deployment")
    return {"project_id": project_id, "status": "accepted"}
