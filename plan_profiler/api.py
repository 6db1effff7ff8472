#!/usr/bin/env python3
"""
Compute Plan Profiler - REST API Server

Endpoints:
- GET  /health   - server status
- POST /profile  - run a profile: {"model": path, "device": 0-3, "full_profile": bool}
- GET  /profile  - last profile result
- GET  /log      - accumulated run log

Only one run at a time; a POST while a run is active gets 409.

Environment:
- PROFILER_HOST: API host (default: 0.0.0.0)
- PROFILER_PORT: API port (default: 7070)
"""

import json
import threading
import time
from http.server import BaseHTTPRequestHandler, HTTPServer
from socketserver import ThreadingMixIn
from typing import Any, Callable, Dict, Optional, Tuple

from .config import PROFILER_HOST, PROFILER_PORT, ProfileConfig
from .errors import InvalidInput, ProfilerError
from .runner import LogBuffer, ProfileResult, ProfileRunner


class RunnerBusy(ProfilerError):
    pass


class ProfileService:
    def __init__(self, runner_factory: Callable[[LogBuffer], ProfileRunner]):
        self.runner_factory = runner_factory
        self.log = LogBuffer()
        self.last_result: Optional[ProfileResult] = None
        self.last_run_at: Optional[str] = None
        self._busy = threading.Lock()

    @property
    def busy(self) -> bool:
        return self._busy.locked()

    def profile(self, model: str, device: int = 0, full_profile: bool = False) -> ProfileResult:
        if not self._busy.acquire(blocking=False):
            raise RunnerBusy("A profiling run is already in progress")
        try:
            # the log covers the latest run only, like last_result
            self.log = LogBuffer()
            runner = self.runner_factory(self.log)
            result = runner.run(model, device_selector=device, full_profile=full_profile)
            self.last_result = result
            self.last_run_at = time.strftime("%Y-%m-%d %H:%M:%S")
            return result
        finally:
            self._busy.release()


def default_service(config: Optional[ProfileConfig] = None) -> ProfileService:
    from .onnx_engine import OnnxRuntimeEngine, SyntheticInputGenerator

    cfg = config or ProfileConfig()

    def factory(log: LogBuffer) -> ProfileRunner:
        engine = OnnxRuntimeEngine(work_dir=cfg.output_dir)
        return ProfileRunner(engine, input_generator=SyntheticInputGenerator(), config=cfg, sink=log)

    return ProfileService(factory)


# ==================== Request handling ====================
def handle_post_profile(service: ProfileService, body: Dict[str, Any]) -> Tuple[int, Dict[str, Any]]:
    model = str(body.get("model", "")).strip()
    if not model:
        return 400, {"ok": False, "error": "model required"}
    device = body.get("device", 0)
    full = bool(body.get("full_profile", False))
    try:
        result = service.profile(model, device, full)
    except RunnerBusy as e:
        return 409, {"ok": False, "error": str(e)}
    except InvalidInput as e:
        return 400, {"ok": False, "error": str(e)}
    except ProfilerError as e:
        return 500, {"ok": False, "error": str(e)}
    return 200, {"ok": True, "model": model, "result": result.to_dict()}


def handle_get(service: ProfileService, path: str) -> Tuple[int, Dict[str, Any]]:
    if path == "/health":
        return 200, {
            "ok": True,
            "service": "compute-plan-profiler",
            "busy": service.busy,
            "time": time.strftime("%Y-%m-%d %H:%M:%S"),
        }
    if path == "/profile":
        if service.last_result is None:
            return 404, {"ok": False, "error": "No profile has been run yet"}
        return 200, {"ok": True, "profiled_at": service.last_run_at, "result": service.last_result.to_dict()}
    if path == "/log":
        return 200, {"ok": True, "log": service.log.text}
    return 404, {"ok": False, "error": "Not found"}


def _json_response(handler: BaseHTTPRequestHandler, obj: Dict, code: int = 200):
    data = json.dumps(obj).encode("utf-8")
    handler.send_response(code)
    handler.send_header("Content-Type", "application/json; charset=utf-8")
    handler.send_header("Access-Control-Allow-Origin", "*")
    handler.send_header("Content-Length", str(len(data)))
    handler.end_headers()
    handler.wfile.write(data)


def _read_json(handler: BaseHTTPRequestHandler) -> Optional[Dict]:
    try:
        n = int(handler.headers.get("Content-Length", "0"))
        raw = handler.rfile.read(n) if n > 0 else b"{}"
        body = json.loads(raw.decode("utf-8") or "{}")
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


class ThreadingHTTPServer(ThreadingMixIn, HTTPServer):
    daemon_threads = True


def make_handler(service: ProfileService):
    class ProfilerAPI(BaseHTTPRequestHandler):
        def log_message(self, format, *args):
            pass

        def do_OPTIONS(self):
            self.send_response(204)
            self.send_header("Access-Control-Allow-Origin", "*")
            self.send_header("Access-Control-Allow-Methods", "GET,POST,OPTIONS")
            self.send_header("Access-Control-Allow-Headers", "Content-Type")
            self.end_headers()

        def do_GET(self):
            code, obj = handle_get(service, self.path.split("?")[0].rstrip("/"))
            _json_response(self, obj, code)

        def do_POST(self):
            path = self.path.split("?")[0].rstrip("/")
            body = _read_json(self)
            if body is None:
                _json_response(self, {"ok": False, "error": "Invalid JSON"}, 400)
                return
            if path != "/profile":
                _json_response(self, {"ok": False, "error": "Not found"}, 404)
                return
            code, obj = handle_post_profile(service, body)
            _json_response(self, obj, code)

    return ProfilerAPI


# ==================== Main ====================
def main():
    service = default_service()
    print(f"[profiler-api] Starting Compute Plan Profiler API")
    print(f"[profiler-api] Host: {PROFILER_HOST}:{PROFILER_PORT}")

    httpd = ThreadingHTTPServer((PROFILER_HOST, PROFILER_PORT), make_handler(service))
    print(f"[profiler-api] Listening on http://{PROFILER_HOST}:{PROFILER_PORT}")

    try:
        httpd.serve_forever()
    except KeyboardInterrupt:
        print("\n[profiler-api] Shutting down...")
    finally:
        httpd.server_close()


if __name__ == "__main__":
    main()
