"""HTTP(S) transport for the runtime-extension hooks.

Cluster API calls ``POST /hooks.runtime.cluster.x-k8s.io/v1alpha1/discovery``
once, then ``POST .../<hook>/<handler-name>`` for each registered handler.
Only the hook segment is used for routing; the handler name is whatever
:meth:`HookAllocator.discovery` advertised.
"""

from __future__ import annotations

import json
import logging
import ssl
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from vip_allocator.hook import HOOKS_API_VERSION, HookAllocator

LOG = logging.getLogger(__name__)

HOOK_PREFIX = f"/{HOOKS_API_VERSION}/"


def route(allocator: HookAllocator, path: str, body: bytes) -> Tuple[int, Dict[str, Any]]:
    """Run the hook addressed by ``path`` and return (HTTP status, JSON body)."""

    if not path.startswith(HOOK_PREFIX):
        return 404, {"error": f"unknown path {path}"}
    hook = path[len(HOOK_PREFIX):].split("/", 1)[0].lower()

    if hook == "discovery":
        return 200, allocator.discovery()

    handlers = {
        "generatepatches": allocator.generate_patches,
        "beforeclustercreate": allocator.before_cluster_create,
        "beforeclusterdelete": allocator.before_cluster_delete,
        "afterclusterupgrade": allocator.after_cluster_upgrade,
    }
    handler = handlers.get(hook)
    if handler is None:
        return 404, {"error": f"unknown hook {hook!r}"}

    try:
        request = json.loads(body or b"{}")
    except ValueError as exc:
        return 400, {"error": f"invalid request body: {exc}"}
    if not isinstance(request, dict):
        return 400, {"error": "request body must be a JSON object"}
    return 200, handler(request).to_dict()


class _HookHandler(BaseHTTPRequestHandler):
    allocator: HookAllocator

    def do_POST(self) -> None:
        length = int(self.headers.get("Content-Length") or 0)
        body = self.rfile.read(length) if length else b""
        try:
            code, payload = route(self.allocator, self.path, body)
        except Exception:
            LOG.exception("hook %s failed", self.path)
            code, payload = 500, {"error": "internal error"}
        self._respond(code, payload)

    def do_GET(self) -> None:
        if self.path in ("/healthz", "/readyz"):
            self._respond(200, {"status": "ok"})
        else:
            self._respond(404, {"error": "Not found"})

    def _respond(self, code: int, body: Dict[str, Any]) -> None:
        data = json.dumps(body).encode("utf-8")
        self.send_response(code)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        self.wfile.write(data)

    def log_message(self, format: str, *args: Any) -> None:
        LOG.debug("%s - %s", self.address_string(), format % args)


class HookServer:
    def __init__(
        self,
        allocator: HookAllocator,
        *,
        host: str = "0.0.0.0",
        port: int = 9443,
        cert_dir: Optional[Path] = None,
    ) -> None:
        handler_cls = type("Handler", (_HookHandler,), {"allocator": allocator})
        self._server = ThreadingHTTPServer((host, port), handler_cls)
        self._tls = cert_dir is not None
        if cert_dir is not None:
            context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
            context.load_cert_chain(
                certfile=str(Path(cert_dir) / "tls.crt"),
                keyfile=str(Path(cert_dir) / "tls.key"),
            )
            self._server.socket = context.wrap_socket(self._server.socket, server_side=True)
        self._thread: Optional[threading.Thread] = None

    @property
    def port(self) -> int:
        return self._server.server_address[1]

    def start(self) -> None:
        self._thread = threading.Thread(
            target=self._server.serve_forever, name="hook-server", daemon=True
        )
        self._thread.start()
        LOG.info(
            "hook server listening on port %d (%s)", self.port, "https" if self._tls else "http"
        )

    def shutdown(self) -> None:
        self._server.shutdown()
        self._server.server_close()
        if self._thread is not None:
            self._thread.join()
