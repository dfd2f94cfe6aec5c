"""
Build Service Client

HTTP client for the remote build service consumed by the dashboard:
- listBuilds:     GET  /projects/{project_id}/builds
- fetchLog:       GET  /builds/{project}/{run_name}/logs  (or /builds/{run_name}/logs)
- triggerDeploy:  POST /projects/{project_id}/deploy

Failure contract:
- HTTP 404 on a log resource is NOT an error: it means "not yet available"
  and is reported as found=False
- Timeouts, connection errors and other HTTP errors raise BuildServiceError
- No retries here; the log synchronizer retries on its next tick
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

import httpx
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator

from .config import ObserverSettings
from .status_classifier import LifecycleState, classify

logger = logging.getLogger("build_client")

_TIMESTAMP = TypeAdapter(Optional[datetime])


class BuildServiceError(Exception):
    """Transport or server failure talking to the build service."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


# -----------------------------------------------------------------------------
# Wire Models
# -----------------------------------------------------------------------------
class BuildRecord(BaseModel):
    """One build entry as returned by the build list endpoint."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: int
    run_name: str = Field(alias="pipeline_run_name")
    raw_status: str = Field(default="", alias="status")
    start_time: Optional[datetime] = None
    # Wire value as sent, kept for display when it is not a parseable timestamp
    start_time_text: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _lenient_start_time(cls, data: Any) -> Any:
        if not isinstance(data, dict) or "start_time" not in data:
            return data
        data = dict(data)
        raw = data["start_time"]
        data["start_time_text"] = None if raw is None else str(raw)
        try:
            data["start_time"] = _TIMESTAMP.validate_python(raw)
        except ValidationError:
            logger.debug(f"Unparseable start_time {raw!r} for build {data.get('id')}")
            data["start_time"] = None
        return data

    @property
    def lifecycle_state(self) -> LifecycleState:
        return classify(self.raw_status)


@dataclass(frozen=True)
class BuildRef:
    """
    Address of one build's logs.

    project is the project identifier or name; when absent the log is
    addressed by run name alone.
    """
    run_name: str
    project: Optional[Union[str, int]] = None

    def log_path(self) -> str:
        if self.project is not None and self.project != "":
            return f"/builds/{self.project}/{self.run_name}/logs"
        return f"/builds/{self.run_name}/logs"

    def __str__(self) -> str:
        if self.project is not None and self.project != "":
            return f"{self.project}/{self.run_name}"
        return self.run_name


@dataclass(frozen=True)
class LogFetchResult:
    """Result of a log read. found=False means the log does not exist yet."""
    text: str
    found: bool


# -----------------------------------------------------------------------------
# Client
# -----------------------------------------------------------------------------
class BuildServiceClient:
    """
    Async HTTP client for the build service.

    A new httpx.AsyncClient is opened per request; each call is a short,
    independent, idempotent read (deploy excepted).
    """

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.headers = {"Content-Type": "application/json"}
        if token:
            self.headers["Authorization"] = f"Bearer {token}"
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: ObserverSettings, **kwargs) -> "BuildServiceClient":
        return cls(
            base_url=settings.api_url,
            token=settings.api_token,
            timeout=settings.http_timeout,
            **kwargs
        )

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=self.headers,
            timeout=self.timeout,
            transport=self._transport,
        )

    async def _send(self, method: str, path: str) -> httpx.Response:
        """Send a request, turning transport failures into BuildServiceError."""
        try:
            async with self._client() as client:
                return await client.request(method, path)
        except httpx.TimeoutException as e:
            logger.warning(f"Timeout on {method} {path}: {e}")
            raise BuildServiceError(f"Timeout on {method} {path}") from e
        except httpx.HTTPError as e:
            logger.warning(f"Request error on {method} {path}: {e}")
            raise BuildServiceError(f"Request failed: {method} {path}") from e

    @staticmethod
    def _raise_for_status(response: httpx.Response, action: str) -> None:
        if response.is_success:
            return
        logger.error(f"{action} failed: HTTP {response.status_code}")
        raise BuildServiceError(
            f"{action} failed with HTTP {response.status_code}",
            status_code=response.status_code
        )

    async def list_builds(self, project_id: Union[int, str]) -> List[BuildRecord]:
        """List builds for a project, most recent first (as served)."""
        response = await self._send("GET", f"/projects/{project_id}/builds")
        self._raise_for_status(response, "List builds")

        try:
            payload = response.json()
        except ValueError as e:
            raise BuildServiceError("Build list is not valid JSON") from e
        if isinstance(payload, dict):
            payload = payload.get("builds", [])
        if not isinstance(payload, list):
            raise BuildServiceError("Build list has unexpected shape")

        builds = []
        for item in payload:
            try:
                builds.append(BuildRecord.model_validate(item))
            except ValidationError as e:
                logger.warning(f"Skipping malformed build entry for project {project_id}: {e}")
        return builds

    async def fetch_log(self, ref: BuildRef) -> LogFetchResult:
        """Read a build's log text. 404 means not available yet."""
        response = await self._send("GET", ref.log_path())
        if response.status_code == 404:
            return LogFetchResult(text="", found=False)
        self._raise_for_status(response, f"Fetch log {ref}")

        try:
            payload: Dict[str, Any] = response.json()
        except ValueError as e:
            raise BuildServiceError(f"Log payload for {ref} is not valid JSON") from e
        text = payload.get("logs") if isinstance(payload, dict) else None
        return LogFetchResult(text=text or "", found=True)

    async def trigger_deploy(self, project_id: Union[int, str]) -> None:
        """Start a deployment. The outcome is observed through build status."""
        response = await self._send("POST", f"/projects/{project_id}/deploy")
        self._raise_for_status(response, f"Deploy project {project_id}")
        logger.info(f"Deployment started for project {project_id}")
