"""Development server for Sitepipe.

Serves the build output with live reload:
- Injects a reload script into HTML responses.
- Rejects directory listings and missing paths with a 404 (serving 404.html when present).
- Sends CORS and no-cache headers so browsers always fetch fresh output.
- Watches the source tree and re-runs the affected build tasks.

Key classes:
- LiveReloadService: Websocket server pushing the reload signal to browsers.
- DevServer: Wires the HTTP server, live reload service and Watcher together.
- _ReloadHandler: HTTP request handler that injects the reload script.
"""

from __future__ import annotations

import asyncio
import functools
import json
import threading
from http.server import SimpleHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path

import websockets
from watchdog.observers import Observer

from .models import WatchBinding
from .watcher import TaskRunner, Watcher

RELOAD_MESSAGE = json.dumps({"type": "reload"})


class _ReloadHandler(SimpleHTTPRequestHandler):
    """Serves build output, adding the live reload client to every page.

    Attributes:
        reload_script: Client snippet appended to HTML responses; it opens a
            websocket to the LiveReloadService and reloads on RELOAD_MESSAGE.
    """

    reload_script_template = """
<script>
  (function () {{
    var socket = new WebSocket("ws://" + window.location.hostname + ":{ws_port}/");
    socket.addEventListener("message", function (event) {{
      var payload = {{}};
      try {{ payload = JSON.parse(event.data); }} catch (e) {{}}
      if (payload.type === "reload") {{ window.location.reload(); }}
    }});
  }})();
</script>
"""
    reload_script = reload_script_template.format(ws_port=3001)

    def end_headers(self):
        # Built files change under the browser on every rebuild.
        self.send_header("Access-Control-Allow-Origin", "*")
        self.send_header("Cache-Control", "no-cache, no-store, must-revalidate")
        self.send_header("Pragma", "no-cache")
        super().end_headers()

    def log_message(self, format, *args):  # pragma: no cover - quiet access log
        return

    def list_directory(self, path):  # pragma: no cover - send_head handles directories
        return self._not_found()

    def with_reload_script(self, page: str) -> bytes:
        head, marker, tail = page.rpartition("</body>")
        if marker:
            page = f"{head}{self.reload_script}{marker}{tail}"
        else:
            page = page + self.reload_script
        return page.encode("utf-8")

    def _write_page(self, status: int, page: str) -> None:
        body = self.with_reload_script(page)
        self.send_response(status)
        self.send_header("Content-Type", "text/html; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _not_found(self):
        custom = Path(self.directory, "404.html")
        if not custom.is_file():
            self.send_error(404, "Not found")
            return None
        self._write_page(404, custom.read_text(encoding="utf-8"))
        return None

    def _resolve(self) -> Path | None:
        target = Path(self.translate_path(self.path))
        if target.is_dir():
            target = target / "index.html"
        return target if target.is_file() else None

    def send_head(self):
        target = self._resolve()
        if target is None:
            return self._not_found()
        if target.suffix != ".html":
            return super().send_head()
        self._write_page(200, target.read_text(encoding="utf-8"))
        return None


class LiveReloadService:
    """Websocket server broadcasting the reload signal.

    The service is constructed explicitly, handed to the Watcher as its
    ReloadNotifier, and started/stopped with the dev server.

    Attributes:
        host: Interface to bind.
        port: Websocket port.
        clients: Currently connected websockets.
    """

    def __init__(self, host: str = "0.0.0.0", port: int = 3001):
        self.host = host
        self.port = port
        self.clients: set = set()
        self._server = None
        self._loop: asyncio.AbstractEventLoop | None = None

    async def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._server = await websockets.serve(self._handler, self.host, self.port)

    async def stop(self) -> None:
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        self.clients.clear()

    async def _handler(self, websocket):
        self.clients.add(websocket)
        try:
            await websocket.wait_closed()
        finally:
            self.clients.discard(websocket)

    def reload(self) -> None:
        """Schedule a broadcast and return immediately."""
        if self._loop is None or self._loop.is_closed():
            return
        asyncio.run_coroutine_threadsafe(self.broadcast(RELOAD_MESSAGE), self._loop)

    async def broadcast(self, message: str) -> None:
        stale = set()
        for ws in list(self.clients):
            try:
                await ws.send(message)
            except Exception:
                stale.add(ws)
        self.clients.difference_update(stale)


class DevServer:
    """Development server with live reload functionality.

    Attributes:
        output_dir: Directory served over HTTP.
        source_dir: Directory watched for changes.
        http_port: Port for the HTTP server.
        notifier: Live reload service handle.
        watcher: Routes change events to build bindings.
    """

    def __init__(
        self,
        output_dir: Path,
        source_dir: Path,
        bindings: list[WatchBinding],
        orchestrator: TaskRunner,
        http_port: int = 3000,
        notifier: LiveReloadService | None = None,
    ):
        self.output_dir = output_dir
        self.source_dir = source_dir
        self.http_port = http_port
        self.notifier = notifier or LiveReloadService(port=http_port + 1)
        self.watcher = Watcher(source_dir, bindings, orchestrator, self.notifier)
        self._reload_script = _ReloadHandler.reload_script_template.format(
            ws_port=self.notifier.port
        )
        self._httpd: ThreadingHTTPServer | None = None
        self._observer = None
        self._stopped: asyncio.Event | None = None

    def start(self) -> None:  # pragma: no cover - integration path
        try:
            asyncio.run(self.serve())
        except KeyboardInterrupt:
            pass

    async def serve(self) -> None:
        """Run until stop() is requested, tearing everything down afterwards."""
        self._stopped = asyncio.Event()
        await self.notifier.start()
        await self.watcher.start()
        self._start_http()
        self._start_observer()
        print(f"Watching {self.source_dir} for changes")
        try:
            await self._stopped.wait()
        finally:
            await self.shutdown()

    def request_stop(self) -> None:
        if self._stopped is not None:
            self._stopped.set()

    async def shutdown(self) -> None:
        if self._observer is not None:
            self._observer.stop()
            self._observer.join()
            self._observer = None
        if self._httpd is not None:
            self._httpd.shutdown()
            self._httpd.server_close()
            self._httpd = None
        await self.watcher.stop()
        await self.notifier.stop()

    def handler_class(self) -> type[_ReloadHandler]:
        return type(
            "_ReloadHandlerWithPort",
            (_ReloadHandler,),
            {"reload_script": self._reload_script},
        )

    def _start_http(self) -> None:
        handler = functools.partial(self.handler_class(), directory=str(self.output_dir))
        self._httpd = ThreadingHTTPServer(("", self.http_port), handler)
        threading.Thread(target=self._httpd.serve_forever, daemon=True).start()
        print(f"Serving {self.output_dir} at http://localhost:{self.http_port}")

    def _start_observer(self) -> None:
        observer = Observer()
        self.watcher.schedule(observer)
        observer.start()
        self._observer = observer
