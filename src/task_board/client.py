"""
Remote backend: the Backend interface over the task board HTTP service.

REST calls go through httpx.AsyncClient; change channels are WebSocket
connections opened with the websockets library, reconnecting after drops.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Set
from urllib.parse import quote, urlencode

import httpx
import websockets
from pydantic import ValidationError as PydanticValidationError
from websockets.exceptions import ConnectionClosed

from .backend import Backend
from .changes import ChangeCallback, ChangeEvent, Subscription
from .errors import AuthorizationError, BackendError, NotFoundError, ValidationError
from .models import Activity, Comment, Profile, Project, Task, UserRole
from .storage import ATTACHMENT_BUCKET, BlobStorage

logger = logging.getLogger(__name__)

ACTOR_HEADER = "X-Actor-Id"
DEFAULT_TIMEOUT = 10.0


def _error_from_response(response: httpx.Response) -> Exception:
    try:
        body = response.json()
    except ValueError:
        body = {}
    message = body.get("error") or body.get("detail") or f"HTTP {response.status_code}"
    details = body.get("details") or {}
    if response.status_code == 422:
        return ValidationError(message, rule=details.get("rule"))
    if response.status_code == 403:
        return AuthorizationError(message)
    if response.status_code == 404:
        return NotFoundError(message, redirect_to=details.get("redirect_to", "/"))
    return BackendError(message)


class RemoteBackend(Backend):
    """
    Args:
        base_url: Service root, e.g. ``http://localhost:8080``
        client: Preconfigured httpx.AsyncClient (tests pass an ASGI transport)
        timeout: Request timeout in seconds
    """

    def __init__(self, base_url: str, client: Optional[httpx.AsyncClient] = None,
                 timeout: float = DEFAULT_TIMEOUT):
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)
        self._listeners: Set[asyncio.Task] = set()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self) -> None:
        for task in list(self._listeners):
            task.cancel()
        self._listeners.clear()
        await self.client.aclose()

    async def _request(self, method: str, path: str, *, missing_ok: bool = False,
                       actor_id: Optional[str] = None, **kwargs) -> Any:
        """
        Issue one request and decode the JSON body.

        Returns:
            Decoded body, or None for a 404 when ``missing_ok`` is set

        Raises:
            BackendError: Transport failure or 5xx response
            ValidationError, AuthorizationError, NotFoundError: 422/403/404
        """
        headers = {ACTOR_HEADER: actor_id} if actor_id else None
        try:
            response = await self.client.request(method, path, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"{method} {path} failed: {e}")
            raise BackendError(f"Request to {path} failed") from e
        if response.status_code == 404 and missing_ok:
            return None
        if response.is_error:
            raise _error_from_response(response)
        return response.json()

    # Projects

    async def list_projects(self) -> List[Project]:
        return [Project.model_validate(p) for p in await self._request("GET", "/api/projects")]

    async def fetch_project(self, project_id: str) -> Optional[Project]:
        data = await self._request("GET", f"/api/projects/{project_id}", missing_ok=True)
        return Project.model_validate(data) if data else None

    async def insert_project(self, values: Dict[str, Any], owner_id: Optional[str]) -> Project:
        data = await self._request("POST", "/api/projects", json=values, actor_id=owner_id)
        return Project.model_validate(data)

    async def update_project(self, project_id: str, values: Dict[str, Any]) -> Optional[Project]:
        data = await self._request("PATCH", f"/api/projects/{project_id}", json=values,
                                   missing_ok=True)
        return Project.model_validate(data) if data else None

    async def delete_project(self, project_id: str) -> bool:
        data = await self._request("DELETE", f"/api/projects/{project_id}", missing_ok=True)
        return data is not None

    # Tasks

    async def fetch_tasks(self, project_id: str) -> List[Task]:
        data = await self._request("GET", f"/api/projects/{project_id}/tasks")
        return [Task.model_validate(t) for t in data]

    async def fetch_task(self, task_id: str) -> Optional[Task]:
        data = await self._request("GET", f"/api/tasks/{task_id}", missing_ok=True)
        return Task.model_validate(data) if data else None

    async def fetch_subtasks(self, parent_task_id: str) -> List[Task]:
        data = await self._request("GET", f"/api/tasks/{parent_task_id}/subtasks")
        return [Task.model_validate(t) for t in data]

    async def fetch_assigned_tasks(self, user_id: str) -> List[Task]:
        data = await self._request("GET", "/api/tasks", params={"assigned_to": user_id})
        return [Task.model_validate(t) for t in data]

    async def fetch_tasks_with_due_date(self) -> List[Task]:
        data = await self._request("GET", "/api/tasks", params={"has_due_date": "true"})
        return [Task.model_validate(t) for t in data]

    async def insert_task(self, project_id: str, values: Dict[str, Any],
                          actor_id: Optional[str]) -> Task:
        data = await self._request("POST", f"/api/projects/{project_id}/tasks", json=values,
                                   actor_id=actor_id)
        return Task.model_validate(data)

    async def update_task(self, task_id: str, values: Dict[str, Any],
                          actor_id: Optional[str]) -> Optional[Task]:
        data = await self._request("PATCH", f"/api/tasks/{task_id}", json=values,
                                   actor_id=actor_id, missing_ok=True)
        return Task.model_validate(data) if data else None

    async def delete_task(self, task_id: str) -> bool:
        data = await self._request("DELETE", f"/api/tasks/{task_id}", missing_ok=True)
        return data is not None

    # Comments and activity

    async def fetch_comments(self, task_id: str) -> List[Comment]:
        data = await self._request("GET", f"/api/tasks/{task_id}/comments")
        return [Comment.model_validate(c) for c in data]

    async def fetch_comment(self, comment_id: str) -> Optional[Comment]:
        data = await self._request("GET", f"/api/comments/{comment_id}", missing_ok=True)
        return Comment.model_validate(data) if data else None

    async def insert_comment(self, task_id: str, values: Dict[str, Any],
                             actor_id: Optional[str]) -> Comment:
        data = await self._request("POST", f"/api/tasks/{task_id}/comments", json=values,
                                   actor_id=actor_id)
        return Comment.model_validate(data)

    async def fetch_activities(self, task_id: str, limit: int = 10) -> List[Activity]:
        data = await self._request("GET", f"/api/tasks/{task_id}/activities",
                                   params={"limit": limit})
        return [Activity.model_validate(a) for a in data]

    # Profiles and roles

    async def list_profiles(self) -> List[Profile]:
        return [Profile.model_validate(p) for p in await self._request("GET", "/api/profiles")]

    async def fetch_profile(self, profile_id: str) -> Optional[Profile]:
        data = await self._request("GET", f"/api/profiles/{profile_id}", missing_ok=True)
        return Profile.model_validate(data) if data else None

    async def fetch_role(self, user_id: str) -> Optional[UserRole]:
        data = await self._request("GET", f"/api/profiles/{user_id}/role")
        return UserRole(data["role"]) if data.get("role") else None

    async def set_role(self, user_id: str, role: UserRole) -> bool:
        data = await self._request("PUT", f"/api/profiles/{user_id}/role",
                                   json={"role": UserRole(role).value}, missing_ok=True)
        return data is not None

    # Change channels

    def channel_url(self, table: str, column: str, value: Any) -> str:
        ws_base = self.base_url.replace("https://", "wss://", 1).replace("http://", "ws://", 1)
        return f"{ws_base}/ws/changes/{table}?{urlencode({'column': column, 'value': value})}"

    def subscribe(self, table: str, column: str, value: Any,
                  callback: ChangeCallback) -> Subscription:
        """
        Open a WebSocket change channel in the background.

        Must be called from a running event loop.
        """
        task = asyncio.ensure_future(self._listen(self.channel_url(table, column, value), callback))
        self._listeners.add(task)

        def unsubscribe():
            task.cancel()
            self._listeners.discard(task)

        return Subscription(unsubscribe)

    async def _listen(self, url: str, callback: ChangeCallback) -> None:
        async for websocket in websockets.connect(url):
            logger.info(f"Change channel connected: {url}")
            try:
                async for message in websocket:
                    try:
                        event = ChangeEvent.model_validate_json(message)
                    except PydanticValidationError as e:
                        logger.warning(f"Ignoring malformed change message: {e}")
                        continue
                    try:
                        callback(event)
                    except Exception as e:
                        logger.error(f"Change subscriber failed on {event.table} {event.kind.value}: {e}")
            except ConnectionClosed:
                logger.info(f"Change channel dropped, reconnecting: {url}")
                continue


class RemoteBlobStorage(BlobStorage):
    """Attachment uploads through the service's /api/uploads endpoint."""

    def __init__(self, backend: RemoteBackend, bucket: str = ATTACHMENT_BUCKET):
        self.backend = backend
        self.bucket = bucket

    def public_url(self, path: str) -> str:
        return f"{self.backend.base_url}/storage/{self.bucket}/{path}"

    async def upload(self, path: str, data: bytes) -> str:
        body = await self.backend._request("POST", f"/api/uploads/{quote(path)}", content=data)
        return body["url"]
