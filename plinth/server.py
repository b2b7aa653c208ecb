"""Development server for Plinth.

Serves the output directory over HTTP and reloads connected browsers after
every rebuild:
- HTML responses get a small script that listens on a websocket.
- Missing paths and directories without an index get a 404.
- A Watcher rebuilds on input changes and the server broadcasts a reload.

Key classes:
- DevServer: Runs the HTTP server, the reload websocket and the watcher.
- _ReloadHandler: Request handler injecting the reload script.
"""

from __future__ import annotations

import asyncio
import functools
import json
import logging
import threading
import time
from http.server import SimpleHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path

import websockets

from .build import Builder, BuildResult
from .watch import Watcher

logger = logging.getLogger(__name__)

RELOAD_SCRIPT_TEMPLATE = """
<script>
(() => {{
  const ws = new WebSocket('ws://' + location.hostname + ':{ws_port}');
  ws.onmessage = (event) => {{
    const data = JSON.parse(event.data || '{{}}');
    if (data.type === 'reload') location.reload();
  }};
}})();
</script>
"""


def inject_reload_script(html: str, script: str) -> str:
    """Insert the reload script before ``</body>``, or append it."""
    if "</body>" in html:
        return html.replace("</body>", f"{script}</body>", 1)
    return html + script


class _ReloadHandler(SimpleHTTPRequestHandler):
    """Serves the output tree, adding the reload script to HTML pages."""

    reload_script = RELOAD_SCRIPT_TEMPLATE.format(ws_port=4001)

    def end_headers(self):
        self.send_header("Cache-Control", "no-cache, no-store, must-revalidate")
        super().end_headers()

    def list_directory(self, path):  # pragma: no cover - exercised via send_head
        return self._send_html(None, 404)

    def log_message(self, format, *args):
        logger.debug("%s - %s", self.address_string(), format % args)

    def _send_html(self, page: Path | None, status: int):
        if page is None:
            page = Path(self.directory) / "404.html"
            if not page.is_file():
                self.send_error(404, "File not found")
                return None
        content = inject_reload_script(page.read_text(encoding="utf-8"), self.reload_script)
        encoded = content.encode("utf-8")
        self.send_response(status)
        self.send_header("Content-type", "text/html; charset=utf-8")
        self.send_header("Content-Length", str(len(encoded)))
        self.end_headers()
        self.wfile.write(encoded)
        return None

    def send_head(self):
        path = Path(self.translate_path(self.path))
        if path.is_dir():
            path = path / "index.html"
        if not path.is_file():
            return self._send_html(None, 404)
        if path.suffix in (".html", ".htm"):
            return self._send_html(path, 200)
        return super().send_head()


class DevServer:
    """Development server with live reload.

    Attributes:
        builder: Builder used for the initial build and every rebuild.
        output_dir: Directory being served.
        http_port: Port of the HTTP server.
        ws_port: Port of the reload websocket.
    """

    def __init__(
        self,
        builder: Builder,
        http_port: int | None = None,
        ws_port: int | None = None,
    ):
        """Initialize the development server.

        Args:
            builder: Builder for the project to serve.
            http_port: Override for the configured HTTP port.
            ws_port: Override for the websocket port (defaults to HTTP + 1).
        """
        config = builder.config
        self.builder = builder
        self.output_dir = config.output
        self.http_port = int(http_port or config.port)
        if ws_port is not None:
            self.ws_port = ws_port
        elif http_port is None and config.ws_port is not None:
            self.ws_port = config.ws_port
        else:
            self.ws_port = self.http_port + 1
        self.reload_script = RELOAD_SCRIPT_TEMPLATE.format(ws_port=self.ws_port)
        self.watcher = Watcher(builder, on_rebuild=self._on_rebuild)
        self._ws_clients: set = set()
        self._loop = asyncio.new_event_loop()
        self._httpd: ThreadingHTTPServer | None = None

    def start(self) -> None:  # pragma: no cover - integration path
        self.builder.run(full=True)
        threading.Thread(target=self._start_http, daemon=True).start()
        threading.Thread(target=self._start_ws, daemon=True).start()
        self.watcher.start()
        try:
            while True:
                time.sleep(1)
        except KeyboardInterrupt:
            self.stop()

    def stop(self) -> None:
        self.watcher.stop()
        if self._httpd is not None:
            self._httpd.shutdown()
        self._loop.call_soon_threadsafe(self._loop.stop)

    def handler_class(self) -> type[_ReloadHandler]:
        """Request handler class bound to this server's websocket port."""
        return type(
            "_BoundReloadHandler",
            (_ReloadHandler,),
            {"reload_script": self.reload_script},
        )

    def _start_http(self) -> None:  # pragma: no cover - integration path
        handler = functools.partial(self.handler_class(), directory=str(self.output_dir))
        self._httpd = ThreadingHTTPServer(("", self.http_port), handler)
        logger.info("Serving %s at http://localhost:%d", self.output_dir, self.http_port)
        self._httpd.serve_forever()

    def _start_ws(self) -> None:  # pragma: no cover - integration path
        asyncio.set_event_loop(self._loop)
        try:
            self._loop.run_until_complete(self._run_ws_server())
        except OSError as exc:
            logger.error("Reload server failed to start (port %d): %s", self.ws_port, exc)

    async def _run_ws_server(self) -> None:  # pragma: no cover - integration path
        async with websockets.serve(self._ws_handler, "0.0.0.0", self.ws_port):
            await asyncio.Future()

    async def _ws_handler(self, websocket):
        self._ws_clients.add(websocket)
        try:
            await websocket.wait_closed()
        finally:
            self._ws_clients.discard(websocket)

    def _on_rebuild(self, result: BuildResult) -> None:
        self.broadcast_reload()

    def broadcast_reload(self) -> None:
        """Tell every connected browser to reload."""
        if not self._loop.is_running():
            return
        message = json.dumps({"type": "reload"})
        asyncio.run_coroutine_threadsafe(self._async_broadcast(message), self._loop)

    async def _async_broadcast(self, message: str) -> None:
        stale = set()
        for ws in list(self._ws_clients):
            try:
                await ws.send(message)
            except websockets.ConnectionClosed:
                stale.add(ws)
        self._ws_clients.difference_update(stale)
