# gitlab_client.py — Async client for the GitLab REST API (v4)
"""
Thin typed wrapper over the endpoints PulseBoard needs: projects, branches,
merge requests, pipelines and project hooks.

Every request carries the connection's bearer token and is retried (fixed
wait, bounded attempts) on transport errors and 5xx/429 responses. The retry
loop hands back the final response instead of raising; ``_handle_response``
then turns any non-2xx into a ``GitlabApiError``.
"""
import logging
from typing import Any, Dict, List, Optional

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    wait_fixed,
)

import gitlab_config
from telemetry import get_tracer

logger = logging.getLogger("pulseboard.gitlab")


class GitlabApiError(Exception):
    """Non-2xx response (or exhausted transport retries) from GitLab"""

    def __init__(self, message: str, status_code: int = 0, body: Any = None, context: str = ""):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.body = body
        self.context = context


def _should_retry_response(response: Any) -> bool:
    return isinstance(response, httpx.Response) and (
        response.status_code >= 500 or response.status_code == 429
    )


def _return_last_outcome(retry_state):
    # Re-raises the last transport error, otherwise returns the last response
    return retry_state.outcome.result()


def normalize_api_url(base_url: str) -> str:
    base = base_url.rstrip("/")
    if base.endswith("/api/v4"):
        return base
    return f"{base}/api/v4"


class GitlabClient:
    """One instance per connection. Construction does no I/O."""

    def __init__(
        self,
        base_url: str,
        api_token: str,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
        retry_wait: Optional[float] = None,
    ):
        self.api_url = normalize_api_url(base_url)
        self._token = api_token
        self._transport = transport
        self._timeout = timeout if timeout is not None else gitlab_config.http_timeout()
        self._max_attempts = max_attempts or gitlab_config.retry_attempts()
        self._retry_wait = retry_wait if retry_wait is not None else gitlab_config.retry_wait_seconds()
        self._client: Optional[httpx.AsyncClient] = None

    @classmethod
    def for_connection(cls, connection, **kwargs) -> "GitlabClient":
        return cls(connection.base_url, connection.api_token, **kwargs)

    async def __aenter__(self) -> "GitlabClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.api_url,
                headers={
                    "Authorization": f"Bearer {self._token}",
                    "Accept": "application/json",
                },
                timeout=self._timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # ============================================================
    # TRANSPORT
    # ============================================================

    async def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        client = self._ensure_client()
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_fixed(self._retry_wait),
            retry=(
                retry_if_exception_type(httpx.TransportError)
                | retry_if_result(_should_retry_response)
            ),
            retry_error_callback=_return_last_outcome,
        )
        return await retrying(client.request, method, path, **kwargs)

    async def _request(self, method: str, path: str, context: str, **kwargs) -> httpx.Response:
        tracer = get_tracer("pulseboard.gitlab")
        try:
            if tracer is not None:
                with tracer.start_as_current_span(f"gitlab {method} {path}"):
                    return await self._send(method, path, **kwargs)
            return await self._send(method, path, **kwargs)
        except httpx.TransportError as e:
            logger.warning(f"GitLab transport failure during '{context}': {e}")
            raise GitlabApiError(f"{context}: {e}", status_code=0, body=None, context=context) from e

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return response.text

    def _handle_response(self, response: httpx.Response, context: str) -> Any:
        body = self._decode(response)
        if response.is_success:
            return body

        remote = None
        if isinstance(body, dict):
            remote = body.get("message") or body.get("error")
        if not remote:
            remote = "Unknown GitLab API error"
        if not isinstance(remote, str):
            remote = str(remote)
        raise GitlabApiError(
            f"{context}: {remote}",
            status_code=response.status_code,
            body=body,
            context=context,
        )

    # ============================================================
    # OPERATIONS
    # ============================================================

    async def test_connection(self) -> Dict[str, Any]:
        response = await self._request("GET", "/user", "Failed to connect to GitLab")
        return self._handle_response(response, "Failed to connect to GitLab")

    async def search_projects(self, search: str = "", per_page: int = 20) -> List[Dict[str, Any]]:
        params = {
            "search": search,
            "membership": "true",
            "per_page": per_page,
            "order_by": "last_activity_at",
        }
        response = await self._request("GET", "/projects", "Failed to search projects", params=params)
        return self._handle_response(response, "Failed to search projects")

    async def get_project(self, project_id: int) -> Dict[str, Any]:
        response = await self._request("GET", f"/projects/{project_id}", "Failed to get project")
        return self._handle_response(response, "Failed to get project")

    async def create_branch(self, project_id: int, branch: str, ref: str) -> Dict[str, Any]:
        response = await self._request(
            "POST", f"/projects/{project_id}/repository/branches", "Failed to create branch",
            json={"branch": branch, "ref": ref},
        )
        return self._handle_response(response, "Failed to create branch")

    async def create_merge_request(
        self,
        project_id: int,
        source_branch: str,
        target_branch: str,
        title: str,
        description: str = "",
    ) -> Dict[str, Any]:
        response = await self._request(
            "POST", f"/projects/{project_id}/merge_requests", "Failed to create merge request",
            json={
                "source_branch": source_branch,
                "target_branch": target_branch,
                "title": title,
                "description": description,
            },
        )
        return self._handle_response(response, "Failed to create merge request")

    async def get_merge_request(self, project_id: int, mr_iid: int) -> Dict[str, Any]:
        response = await self._request(
            "GET", f"/projects/{project_id}/merge_requests/{mr_iid}", "Failed to get merge request",
        )
        return self._handle_response(response, "Failed to get merge request")

    async def list_merge_requests(self, project_id: int, **params) -> List[Dict[str, Any]]:
        response = await self._request(
            "GET", f"/projects/{project_id}/merge_requests", "Failed to list merge requests",
            params=params,
        )
        return self._handle_response(response, "Failed to list merge requests")

    async def get_pipeline_status(self, project_id: int, ref: str) -> Dict[str, Any]:
        """Latest pipeline for a ref, or {} when the ref has none"""
        response = await self._request(
            "GET", f"/projects/{project_id}/pipelines", "Failed to get pipeline status",
            params={"ref": ref, "per_page": 1, "order_by": "id", "sort": "desc"},
        )
        pipelines = self._handle_response(response, "Failed to get pipeline status")
        if isinstance(pipelines, list) and pipelines:
            return pipelines[0]
        return {}

    async def register_webhook(self, project_id: int, url: str, secret_token: str) -> Dict[str, Any]:
        response = await self._request(
            "POST", f"/projects/{project_id}/hooks", "Failed to register webhook",
            json={
                "url": url,
                "token": secret_token,
                "merge_requests_events": True,
                "pipeline_events": True,
                "push_events": True,
                "enable_ssl_verification": True,
            },
        )
        return self._handle_response(response, "Failed to register webhook")

    async def delete_webhook(self, project_id: int, hook_id: int) -> None:
        """Remove a project hook; an already-removed hook (404) counts as success"""
        response = await self._request(
            "DELETE", f"/projects/{project_id}/hooks/{hook_id}", "Failed to delete webhook",
        )
        if response.status_code == 404:
            return None
        self._handle_response(response, "Failed to delete webhook")
        return None
