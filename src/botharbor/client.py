"""Client for a running botharbor API."""

from pathlib import Path
from typing import Any, Optional

import httpx


class RunnerClient:
    """Thin synchronous wrapper over the HTTP API."""

    def __init__(
        self,
        base_url: str = "http://localhost:8801",
        token: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        headers = {"X-Runner-Token": token} if token else {}
        self._client = httpx.Client(timeout=timeout, headers=headers, transport=transport)

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self._client.close()

    def close(self):
        self._client.close()

    def _url(self, server_id: str, deployment_id: Optional[str] = None, suffix: str = "") -> str:
        url = f"{self.base_url}/servers/{server_id}/deployments"
        if deployment_id:
            url += f"/{deployment_id}"
        return url + suffix

    def health(self) -> bool:
        try:
            response = self._client.get(f"{self.base_url}/health")
            return response.status_code == 200
        except httpx.HTTPError:
            return False

    def deploy(self, archive: str | Path, server_id: str, server_name: str = "") -> str:
        path = Path(archive)
        response = self._client.post(
            self._url(server_id),
            params={"file_name": path.name, "server_name": server_name},
            content=path.read_bytes(),
            headers={"Content-Type": "application/zip"},
        )
        response.raise_for_status()
        return response.json()["deployment_id"]

    def get_state(self, server_id: str, deployment_id: str) -> Optional[dict[str, Any]]:
        response = self._client.get(self._url(server_id, deployment_id))
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return response.json()

    def get_logs(self, server_id: str, deployment_id: str, before_id: Optional[int] = None) -> list[dict]:
        params = {"before_id": before_id} if before_id is not None else {}
        response = self._client.get(self._url(server_id, deployment_id, "/logs"), params=params)
        response.raise_for_status()
        return response.json()["logs"]

    def _action(self, server_id: str, deployment_id: str, action: str) -> dict[str, Any]:
        response = self._client.post(self._url(server_id, deployment_id, f"/{action}"))
        response.raise_for_status()
        return response.json()

    def stop(self, server_id: str, deployment_id: str) -> dict[str, Any]:
        return self._action(server_id, deployment_id, "stop")

    def restart(self, server_id: str, deployment_id: str) -> dict[str, Any]:
        return self._action(server_id, deployment_id, "restart")

    def complete_stop(self, server_id: str, deployment_id: str) -> dict[str, Any]:
        return self._action(server_id, deployment_id, "complete-stop")

    def reset(self, server_id: str, deployment_id: str) -> dict[str, Any]:
        return self._action(server_id, deployment_id, "reset")

    def write_input(self, server_id: str, deployment_id: str, data: str) -> None:
        response = self._client.post(self._url(server_id, deployment_id, "/input"), json={"data": data})
        response.raise_for_status()

    def list_files(self, server_id: str, deployment_id: str, path: str = "") -> list[dict]:
        response = self._client.get(self._url(server_id, deployment_id, "/files"), params={"path": path})
        response.raise_for_status()
        return response.json()["files"]

    def read_file(self, server_id: str, deployment_id: str, path: str) -> str:
        response = self._client.get(self._url(server_id, deployment_id, "/file"), params={"path": path})
        response.raise_for_status()
        return response.json()["content"]
