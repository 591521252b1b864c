"""HTTP client for the control-plane API.

A deliberately thin typed RPC layer: each method maps to one endpoint and
returns decoded JSON. Calls carry the project token as a bearer credential.
No per-call timeout is applied unless one is configured.
"""
from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any
from urllib.parse import quote

import requests

from .. import __version__

LOGGER = logging.getLogger(__name__)


class CloudError(RuntimeError):
    """Raised when the control-plane rejects a request or cannot be reached."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        """Store *message* alongside the HTTP *status*, when known."""
        super().__init__(message)
        self.status = status


class CloudNotFoundError(CloudError):
    """Raised when the addressed control-plane record does not exist."""


class CloudClient:
    """Typed wrapper around the control-plane REST endpoints."""

    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        session: requests.Session | None = None,
        timeout: float | None = None,
        verify: bool = True,
    ) -> None:
        """Bind the client to *base_url* and authenticate with *token*."""
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.session = session or requests.Session()
        self.timeout = timeout
        self.verify = verify

    # ------------------------------------------------------------------
    # Core instances
    def create_core_instance(
        self,
        project_id: str,
        payload: Mapping[str, object],
    ) -> dict[str, Any]:
        """Register a core instance and return the created record."""
        data = self._request(
            "POST",
            f"/v1/projects/{quote(project_id, safe='')}/core_instances",
            json_body=payload,
        )
        return _expect_mapping(data, "create core instance")

    def update_core_instance(self, instance_id: str, payload: Mapping[str, object]) -> None:
        """Apply a partial update to core instance *instance_id*."""
        self._request(
            "PATCH",
            f"/v1/core_instances/{quote(instance_id, safe='')}",
            json_body=payload,
        )

    def delete_core_instance(self, instance_id: str) -> None:
        """Delete core instance *instance_id*."""
        self._request("DELETE", f"/v1/core_instances/{quote(instance_id, safe='')}")

    def get_core_instance(self, instance_id: str) -> dict[str, Any]:
        """Return core instance *instance_id*."""
        data = self._request("GET", f"/v1/core_instances/{quote(instance_id, safe='')}")
        return _expect_mapping(data, "get core instance")

    def list_core_instances(
        self,
        project_id: str,
        *,
        name: str | None = None,
        environment_id: str | None = None,
    ) -> list[dict[str, Any]]:
        """Return core instances of *project_id*, optionally filtered."""
        params: dict[str, str] = {}
        if name:
            params["name"] = name
        if environment_id:
            params["environment_id"] = environment_id
        data = self._request(
            "GET",
            f"/v1/projects/{quote(project_id, safe='')}/core_instances",
            params=params,
        )
        return _expect_items(data, "list core instances")

    # ------------------------------------------------------------------
    # Environments
    def list_environments(
        self,
        project_id: str,
        *,
        name: str | None = None,
    ) -> list[dict[str, Any]]:
        """Return environments of *project_id*, optionally filtered by name."""
        params = {"name": name} if name else {}
        data = self._request(
            "GET",
            f"/v1/projects/{quote(project_id, safe='')}/environments",
            params=params,
        )
        return _expect_items(data, "list environments")

    # ------------------------------------------------------------------
    def _headers(self) -> dict[str, str]:
        return {
            "Accept": "application/json",
            "Authorization": f"Bearer {self.token}",
            "User-Agent": f"corectl/{__version__}",
        }

    def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: Mapping[str, object] | None = None,
        params: Mapping[str, str] | None = None,
    ) -> object:
        url = f"{self.base_url}{path}"
        LOGGER.debug("%s %s", method, url)
        try:
            response = self.session.request(
                method,
                url,
                headers=self._headers(),
                json=dict(json_body) if json_body is not None else None,
                params=dict(params) if params else None,
                timeout=self.timeout,
                verify=self.verify,
            )
        except requests.RequestException as exc:
            raise CloudError(f"{method} {path}: {exc}") from exc

        if response.status_code >= 400:
            message = _error_message(response)
            error_cls = CloudNotFoundError if response.status_code == 404 else CloudError
            raise error_cls(message, status=response.status_code)

        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise CloudError(f"{method} {path}: could not decode response: {exc}") from exc


def _error_message(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, Mapping):
        message = str(body.get("error") or body.get("message") or "").strip()
        detail = str(body.get("detail") or "").strip()
        if message and detail:
            return f"{message}: {detail}"
        if message:
            return message
    text = (response.text or "").strip()
    return text or f"HTTP {response.status_code}"


def _expect_mapping(data: object, action: str) -> dict[str, Any]:
    if not isinstance(data, Mapping):
        raise CloudError(f"{action}: unexpected response payload")
    return dict(data)


def _expect_items(data: object, action: str) -> list[dict[str, Any]]:
    if isinstance(data, Mapping):
        data = data.get("items", [])
    if data is None:
        return []
    if not isinstance(data, list):
        raise CloudError(f"{action}: unexpected response payload")
    return [dict(item) for item in data if isinstance(item, Mapping)]


__all__ = ["CloudClient", "CloudError", "CloudNotFoundError"]
