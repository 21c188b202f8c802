"""HTTP client for a named-blob model hub (see ignition_sim.server)."""

from __future__ import annotations

import base64
import http.client
import json
from urllib import error, parse, request


class HubError(RuntimeError):
    """Raised when a hub request fails; ``status`` is None for transport errors."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class HubClient:
    def __init__(self, base_url: str = "http://127.0.0.1:8000", timeout: float = 10.0):
        self.base = base_url.rstrip("/")
        self.timeout = timeout

    def _request(
        self,
        method: str,
        path: str,
        payload: dict | None = None,
        token: str | None = None,
    ) -> bytes:
        data = None
        headers = {}
        if payload is not None:
            data = json.dumps(payload).encode("utf-8")
            headers["Content-Type"] = "application/json"
        if token:
            headers["Authorization"] = f"Bearer {token}"
        req = request.Request(url=f"{self.base}{path}", method=method, data=data, headers=headers)
        try:
            with request.urlopen(req, timeout=self.timeout) as resp:
                return resp.read()
        except error.HTTPError as exc:
            raise HubError(f"{method} {path} failed: {exc.code} {_error_detail(exc)}", status=exc.code) from exc
        except (error.URLError, http.client.HTTPException, OSError) as exc:
            raise HubError(f"{method} {path} failed: {exc!r}") from exc

    def _call(self, method: str, path: str, payload: dict | None = None, token: str | None = None) -> dict:
        body = self._request(method, path, payload, token)
        try:
            return json.loads(body.decode("utf-8"))
        except ValueError as exc:
            raise HubError(f"{method} {path} returned a non-JSON body: {exc}") from exc

    def health(self) -> dict:
        return self._call("GET", "/health")

    def create_repo(self, repo_id: str, token: str | None = None) -> dict:
        return self._call("POST", "/api/repos/create", {"name": repo_id}, token=token)

    def upload_files(self, repo_id: str, files: dict[str, bytes], token: str | None = None) -> dict:
        payload = {
            "repo": repo_id,
            "files": [
                {"path": path, "content": base64.b64encode(content).decode("ascii")}
                for path, content in files.items()
            ],
        }
        return self._call("POST", "/api/repos/upload", payload, token=token)

    def download(self, repo_id: str, path: str) -> bytes:
        return self._request("GET", self.file_path(repo_id, path))

    @staticmethod
    def file_path(repo_id: str, path: str) -> str:
        return f"/{parse.quote(repo_id, safe='/')}/resolve/main/{parse.quote(path, safe='/')}"


def _error_detail(exc: error.HTTPError) -> str:
    try:
        body = json.loads(exc.read().decode("utf-8"))
    except (ValueError, OSError):
        return exc.reason
    if isinstance(body, dict) and "error" in body:
        return str(body["error"])
    return exc.reason
