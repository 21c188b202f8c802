"""HTTP API server for a local named-blob model hub."""

from __future__ import annotations

import base64
import binascii
import json
import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any
from urllib.parse import unquote, urlsplit

from .hub_store import (
    BlobStore,
    BlobValidationError,
    RepoExistsError,
    RepoNotFoundError,
    validate_blob_path,
)

_log = logging.getLogger(__name__)

RESOLVE_MARKER = "/resolve/main/"


class HubHTTPServer:
    def __init__(
        self,
        store: BlobStore | None = None,
        host: str = "127.0.0.1",
        port: int = 8000,
        token: str | None = None,
    ):
        self.store = store if store is not None else BlobStore()
        self.token = token or None

        handler_cls = self._build_handler()
        self.httpd = ThreadingHTTPServer((host, port), handler_cls)
        self.host, self.port = self.httpd.server_address

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    def _build_handler(self):
        parent = self

        class Handler(BaseHTTPRequestHandler):
            server_version = "IgnitionHub/1.0"

            def log_message(self, fmt: str, *args):
                _log.debug("hub_request %s", fmt % args)

            def _send_json(self, code: int, payload: dict[str, Any]):
                body = json.dumps(payload).encode("utf-8")
                self.send_response(code)
                self.send_header("Content-Type", "application/json")
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)

            def _send_bytes(self, data: bytes):
                self.send_response(200)
                self.send_header("Content-Type", "application/octet-stream")
                self.send_header("Content-Length", str(len(data)))
                self.end_headers()
                self.wfile.write(data)

            def _read_json(self) -> dict[str, Any]:
                length = int(self.headers.get("Content-Length", "0"))
                if length == 0:
                    return {}
                data = self.rfile.read(length)
                try:
                    obj = json.loads(data.decode("utf-8"))
                except (UnicodeDecodeError, json.JSONDecodeError) as exc:
                    raise BlobValidationError(f"Invalid JSON body: {exc}") from exc
                if not isinstance(obj, dict):
                    raise BlobValidationError("JSON body must be an object")
                return obj

            def _authorized(self) -> bool:
                if parent.token is None:
                    return True
                return self.headers.get("Authorization", "") == f"Bearer {parent.token}"

            def do_GET(self):
                path = urlsplit(self.path).path
                if path == "/health":
                    self._send_json(200, {"ready": True, "repos": parent.store.repo_count()})
                    return

                if RESOLVE_MARKER in path:
                    repo_part, _, file_part = path.partition(RESOLVE_MARKER)
                    repo_id = unquote(repo_part.lstrip("/"))
                    file_path = unquote(file_part)
                    try:
                        data = parent.store.get(repo_id, file_path)
                    except BlobValidationError as exc:
                        self._send_json(400, {"error": str(exc)})
                        return
                    except KeyError:
                        self._send_json(404, {"error": f"Not found: {repo_id}/{file_path}"})
                        return
                    self._send_bytes(data)
                    return

                self._send_json(404, {"error": "Not Found"})

            def do_POST(self):
                path = urlsplit(self.path).path
                if path not in ("/api/repos/create", "/api/repos/upload"):
                    self._send_json(404, {"error": "Not Found"})
                    return
                if not self._authorized():
                    self._send_json(401, {"error": "Missing or invalid token"})
                    return

                try:
                    body = self._read_json()
                    if path == "/api/repos/create":
                        repo_id = body.get("name")
                        if repo_id is None:
                            raise BlobValidationError("Missing required field: name")
                        parent.store.create_repo(repo_id)
                        _log.info("hub_repo_created repo=%s", repo_id)
                        self._send_json(200, {"name": repo_id, "created": True})
                        return

                    repo_id = body.get("repo")
                    files = body.get("files")
                    if repo_id is None:
                        raise BlobValidationError("Missing required field: repo")
                    if not isinstance(files, list) or not files:
                        raise BlobValidationError("files must be a non-empty list")
                    decoded = _decode_files(files)
                    for file_path, data in decoded:
                        parent.store.put(repo_id, file_path, data)
                    _log.info("hub_upload repo=%s files=%d", repo_id, len(decoded))
                    self._send_json(200, {"repo": repo_id, "paths": [p for p, _ in decoded]})
                except RepoExistsError as exc:
                    self._send_json(409, {"error": str(exc)})
                except BlobValidationError as exc:
                    self._send_json(400, {"error": str(exc)})
                except RepoNotFoundError as exc:
                    self._send_json(404, {"error": f"Repository not found: {exc.args[0]}"})

        return Handler

    def serve_forever(self):
        self.httpd.serve_forever()

    def start_background(self, daemon: bool = True) -> threading.Thread:
        thread = threading.Thread(target=self.serve_forever, daemon=daemon)
        thread.start()
        return thread

    def shutdown(self):
        self.httpd.shutdown()
        self.httpd.server_close()


def _decode_files(files: list[Any]) -> list[tuple[str, bytes]]:
    decoded = []
    for entry in files:
        if not isinstance(entry, dict) or "path" not in entry or "content" not in entry:
            raise BlobValidationError("Each file needs 'path' and 'content'")
        try:
            data = base64.b64decode(entry["content"], validate=True)
        except (binascii.Error, TypeError, ValueError) as exc:
            raise BlobValidationError(f"Invalid base64 content for {entry['path']!r}") from exc
        decoded.append((validate_blob_path(entry["path"]), data))
    return decoded
