import asyncio
import io
from pathlib import Path

from sitepipe.models import WatchBinding
from sitepipe.server import RELOAD_MESSAGE, DevServer, LiveReloadService, _ReloadHandler


class NullOrchestrator:
    async def build(self, task):
        raise AssertionError("no builds expected")


def make_handler(directory, path, handler_cls=_ReloadHandler):
    handler = handler_cls.__new__(handler_cls)
    handler.path = path
    handler.directory = str(directory)
    handler.command = "GET"
    handler.request_version = "HTTP/1.1"
    handler.server_version = ""
    handler.sys_version = ""
    handler._headers_buffer = []
    handler.headers = {}
    handler.rfile = io.BytesIO(b"")
    handler.wfile = io.BytesIO()
    handler.codes = []
    handler.sent_headers = []
    handler.send_response = lambda code, message=None: handler.codes.append(code)
    handler.send_header = lambda key, value: handler.sent_headers.append((key, value))
    handler.end_headers = lambda: None
    handler.send_error = lambda code, message=None: handler.codes.append(("error", code))
    return handler


def test_html_gets_reload_script_before_body_end(tmp_path):
    (tmp_path / "about.html").write_text("<html><body>About</body></html>", encoding="utf-8")
    handler = make_handler(tmp_path, "/about.html")
    assert _ReloadHandler.send_head(handler) is None
    body = handler.wfile.getvalue().decode()
    assert handler.codes == [200]
    assert body.index("WebSocket") < body.index("</body>")


def test_html_without_body_gets_script_appended(tmp_path):
    (tmp_path / "plain.html").write_text("<p>plain</p>", encoding="utf-8")
    handler = make_handler(tmp_path, "/plain.html")
    _ReloadHandler.send_head(handler)
    body = handler.wfile.getvalue().decode()
    assert body.startswith("<p>plain</p>")
    assert "location.reload()" in body


def test_directory_serves_index(tmp_path):
    (tmp_path / "blog").mkdir()
    (tmp_path / "blog" / "index.html").write_text("<body>blog</body>", encoding="utf-8")
    handler = make_handler(tmp_path, "/blog/")
    _ReloadHandler.send_head(handler)
    assert handler.codes == [200]
    assert b"blog" in handler.wfile.getvalue()


def test_missing_path_serves_custom_404(tmp_path):
    (tmp_path / "404.html").write_text("<body>oops</body>", encoding="utf-8")
    handler = make_handler(tmp_path, "/missing")
    assert _ReloadHandler.send_head(handler) is None
    assert handler.codes == [404]
    assert b"oops" in handler.wfile.getvalue()


def test_missing_path_without_404_page(tmp_path):
    handler = make_handler(tmp_path, "/missing")
    _ReloadHandler.send_head(handler)
    assert handler.codes == [("error", 404)]


def test_directory_without_index_is_404(tmp_path):
    (tmp_path / "empty").mkdir()
    handler = make_handler(tmp_path, "/empty/")
    _ReloadHandler.send_head(handler)
    assert handler.codes == [("error", 404)]


def test_static_files_fall_back_to_default(tmp_path):
    (tmp_path / "main.css").write_text("body{}", encoding="utf-8")
    handler = make_handler(tmp_path, "/main.css")
    result = _ReloadHandler.send_head(handler)
    try:
        assert result is not None
        assert result.read() == b"body{}"
    finally:
        result.close()


def test_no_cache_headers(tmp_path):
    handler = make_handler(tmp_path, "/")
    recorded = []
    handler.send_header = lambda key, value: recorded.append(key)
    handler.request_version = "HTTP/0.9"
    _ReloadHandler.end_headers(handler)
    assert "Access-Control-Allow-Origin" in recorded
    assert "Cache-Control" in recorded


def test_broadcast_drops_stale_clients():
    service = LiveReloadService(port=4001)

    class GoodWS:
        def __init__(self):
            self.messages = []

        async def send(self, msg):
            self.messages.append(msg)

    class BadWS:
        async def send(self, msg):
            raise ConnectionError("gone")

    good, bad = GoodWS(), BadWS()
    service.clients = {good, bad}
    asyncio.run(service.broadcast(RELOAD_MESSAGE))
    assert good.messages == ['{"type": "reload"}']
    assert service.clients == {good}


def test_reload_without_loop_is_noop():
    LiveReloadService().reload()


def test_reload_schedules_broadcast(monkeypatch):
    service = LiveReloadService()
    loop = asyncio.new_event_loop()
    service._loop = loop
    called = {}

    def fake_runner(coro, target_loop):
        called["loop"] = target_loop
        runner = asyncio.new_event_loop()
        try:
            return runner.run_until_complete(coro)
        finally:
            runner.close()

    monkeypatch.setattr("sitepipe.server.asyncio.run_coroutine_threadsafe", fake_runner)
    try:
        service.reload()
    finally:
        loop.close()
    assert called["loop"] is loop


def test_ws_handler_tracks_client():
    service = LiveReloadService()

    class DummyWS:
        def __init__(self):
            self.seen_registered = False

        async def wait_closed(self):
            self.seen_registered = self in service.clients

    ws = DummyWS()
    asyncio.run(service._handler(ws))
    assert ws.seen_registered
    assert ws not in service.clients


def test_dev_server_uses_notifier_port(tmp_path):
    bindings = [WatchBinding("markup", "**/*.html", ())]
    server = DevServer(
        tmp_path, tmp_path / "source", bindings, NullOrchestrator(), http_port=5055
    )
    assert server.notifier.port == 5056
    assert ":5056" in server.handler_class().reload_script

    explicit = DevServer(
        tmp_path,
        tmp_path / "source",
        bindings,
        NullOrchestrator(),
        http_port=5055,
        notifier=LiveReloadService(port=6000),
    )
    assert ":6000" in explicit.handler_class().reload_script
    assert explicit.watcher.bindings == bindings


def test_shutdown_stops_everything(tmp_path):
    calls = []

    class DummyObserver:
        def stop(self):
            calls.append("observer.stop")

        def join(self):
            calls.append("observer.join")

    class DummyHTTPD:
        def shutdown(self):
            calls.append("httpd.shutdown")

        def server_close(self):
            calls.append("httpd.close")

    class DummyNotifier:
        port = 3001

        async def stop(self):
            calls.append("notifier.stop")

    server = DevServer(tmp_path, tmp_path, [], NullOrchestrator(), notifier=DummyNotifier())
    server._observer = DummyObserver()
    server._httpd = DummyHTTPD()
    asyncio.run(server.shutdown())
    assert calls == [
        "observer.stop",
        "observer.join",
        "httpd.shutdown",
        "httpd.close",
        "notifier.stop",
    ]
    assert server._observer is None and server._httpd is None


def test_serve_runs_until_stop_requested(monkeypatch, tmp_path):
    events = []

    class DummyNotifier:
        port = 3001

        async def start(self):
            events.append("notifier.start")

        async def stop(self):
            events.append("notifier.stop")

    server = DevServer(tmp_path, tmp_path, [], NullOrchestrator(), notifier=DummyNotifier())
    monkeypatch.setattr(server, "_start_http", lambda: events.append("http"))
    monkeypatch.setattr(server, "_start_observer", lambda: events.append("observer"))

    async def scenario():
        task = asyncio.create_task(server.serve())
        await asyncio.sleep(0)
        server.request_stop()
        await task

    asyncio.run(scenario())
    assert events == ["notifier.start", "http", "observer", "notifier.stop"]
