"""
HTTP server for rxrelay.

Thin glue between HTTP clients and the ProcessSupervisor:

- GET  /audio.wav          live WAV stream from the audio broadcaster
- GET  /stream             Server-Sent Events stream from the log broadcaster
- GET  /health             liveness check
- POST /api/op25/start     start (or restart) rx with {"flags": [...]}
- POST /api/op25/stop      stop rx
- GET  /api/op25/status    {"running": ..., "flags": ...}
- GET  /api/trunk/read     first trunk system
- POST /api/trunk/write    replace first trunk system

Streaming endpoints answer 503 while rx is stopped.
"""

import json
import logging
import select
import socket
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Optional

from rxrelay.config import RelayConfig
from rxrelay.errors import SpawnError, TransportError
from rxrelay.process.supervisor import ProcessSupervisor
from rxrelay.trunk import TrunkSystem, read_trunk_system, write_trunk_system

logger = logging.getLogger(__name__)

# Largest control request body accepted
MAX_BODY_BYTES = 64 * 1024

# select() timeout for the disconnect watcher
DISCONNECT_POLL_SEC = 0.5

# Marker returned by _read_json() for unparseable bodies
_INVALID = object()


def make_handler(supervisor: ProcessSupervisor, config: RelayConfig, start_time: Optional[float] = None):
    """Create a request handler class bound to supervisor and config."""

    started_at = start_time or time.time()

    class RelayHandler(BaseHTTPRequestHandler):
        """HTTP request handler for rxrelay endpoints."""

        server_version = "rxrelay"

        def do_GET(self):
            path = self.path.split("?", 1)[0]
            if path == "/audio.wav":
                self._handle_audio()
            elif path == "/stream":
                self._handle_log_stream()
            elif path == "/health":
                self._handle_health()
            elif path == "/api/op25/status":
                self._send_json(200, supervisor.status().to_dict())
            elif path == "/api/trunk/read":
                self._handle_trunk_read()
            elif path in ("/api/op25/start", "/api/op25/stop", "/api/trunk/write"):
                self._send_json(405, {"error": "Method not allowed"})
            else:
                self.send_error(404, "Not Found")

        def do_POST(self):
            path = self.path.split("?", 1)[0]
            if path == "/api/op25/start":
                self._handle_start()
            elif path == "/api/op25/stop":
                self._handle_stop()
            elif path == "/api/trunk/write":
                self._handle_trunk_write()
            elif path in ("/audio.wav", "/stream", "/health", "/api/op25/status", "/api/trunk/read"):
                self._send_json(405, {"error": "Method not allowed"})
            else:
                self.send_error(404, "Not Found")

        # --- streaming -------------------------------------------------

        def _handle_audio(self):
            broadcaster = supervisor.audio_broadcaster
            if broadcaster is None:
                self.send_error(503, "Audio not broadcasting (rx not started)")
                return
            self.send_response(200)
            self.send_header("Content-Type", "audio/wav")
            self.send_header("Cache-Control", "no-cache")
            self.send_header("Connection", "keep-alive")
            self.end_headers()
            self._stream(broadcaster, "audio")

        def _handle_log_stream(self):
            broadcaster = supervisor.log_broadcaster
            if broadcaster is None:
                self.send_error(503, "Logs not broadcasting (rx not started)")
                return
            self.send_response(200)
            self.send_header("Content-Type", "text/event-stream")
            self.send_header("Cache-Control", "no-cache")
            self.send_header("Connection", "keep-alive")
            self.send_header("Access-Control-Allow-Origin", "*")
            self.end_headers()
            self._stream(broadcaster, "log")

        def _stream(self, broadcaster, kind: str):
            """Run broadcaster.serve() until the client goes away."""
            cancel = threading.Event()
            watcher = threading.Thread(
                target=self._watch_disconnect,
                args=(cancel,),
                daemon=True,
                name=f"DisconnectWatch-{kind}",
            )
            watcher.start()
            logger.info(f"[{kind}] Client connected from {self.client_address[0]}")
            try:
                broadcaster.serve(self.wfile, cancel)
            finally:
                cancel.set()
                self.close_connection = True
                logger.info(f"[{kind}] Client disconnected from {self.client_address[0]}")

        def _watch_disconnect(self, cancel: threading.Event):
            """Set cancel once the peer closes its side of the connection."""
            sock = self.connection
            while not cancel.is_set():
                try:
                    ready, _, _ = select.select([sock], [], [], DISCONNECT_POLL_SEC)
                    if not ready:
                        continue
                    data = sock.recv(1, socket.MSG_PEEK)
                    if not data:
                        break
                    # Discard anything the client sends on a streaming connection
                    sock.recv(4096)
                except (OSError, ValueError):
                    break
            cancel.set()

        # --- control ---------------------------------------------------

        def _handle_health(self):
            self._send_json(200, {
                "status": "ok",
                "rx_running": supervisor.is_running(),
                "uptime_sec": round(time.time() - started_at, 1),
            })

        def _handle_start(self):
            body = self._read_json()
            if body is _INVALID or not isinstance(body, dict):
                self._send_json(400, {"started": False, "error": "Invalid request body"})
                return

            flags = body.get("flags")
            if flags is not None and (
                not isinstance(flags, list) or not all(isinstance(f, str) for f in flags)
            ):
                self._send_json(400, {"started": False, "error": "flags must be a list of strings"})
                return

            try:
                supervisor.start(flags)
            except SpawnError as e:
                self._send_json(500, {"started": False, "error": str(e)})
                return
            except TransportError as e:
                logger.critical(f"Audio transport failure: {e}")
                self._send_json(500, {"started": False, "error": str(e)})
                return
            self._send_json(200, {"started": True})

        def _handle_stop(self):
            if not supervisor.stop():
                self._send_json(409, {"started": False, "error": "rx process not running"})
                return
            self._send_json(200, {"started": False})

        def _handle_trunk_read(self):
            try:
                system = read_trunk_system(config.trunk_path)
            except (OSError, ValueError) as e:
                self._send_json(200, {"error": str(e)})
                return
            self._send_json(200, system.to_dict())

        def _handle_trunk_write(self):
            body = self._read_json()
            if body is _INVALID or not isinstance(body, dict):
                self._send_json(400, {"success": False, "error": "Invalid request body"})
                return
            system = TrunkSystem(
                sysname=str(body.get("sysname") or ""),
                control_channel=str(body.get("control_channel") or ""),
            )
            try:
                write_trunk_system(config.trunk_path, system)
            except (OSError, ValueError) as e:
                self._send_json(200, {"success": False, "error": str(e)})
                return
            self._send_json(200, {"success": True})

        # --- helpers ---------------------------------------------------

        def _read_json(self) -> Any:
            """Parse the request body; empty body is {}; bad input is _INVALID."""
            try:
                length = int(self.headers.get("Content-Length") or 0)
            except ValueError:
                return _INVALID
            if length < 0 or length > MAX_BODY_BYTES:
                return _INVALID
            if length == 0:
                return {}
            try:
                return json.loads(self.rfile.read(length).decode("utf-8"))
            except (UnicodeDecodeError, json.JSONDecodeError):
                return _INVALID

        def _send_json(self, status: int, payload: Any):
            data = json.dumps(payload).encode("utf-8")
            self.send_response(status)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(data)))
            self.send_header("Cache-Control", "no-cache")
            self.end_headers()
            try:
                self.wfile.write(data)
            except OSError as e:
                logger.debug(f"Error sending response: {e}")

        def log_message(self, format, *args):
            """Override to use our logger."""
            logger.debug(f"{self.address_string()} - {format % args}")

    return RelayHandler


class RelayHTTPServer:
    """HTTP server for rxrelay, run in a background thread."""

    def __init__(self, host: str, port: int, supervisor: ProcessSupervisor, config: RelayConfig):
        self.host = host
        self.port = port
        self.supervisor = supervisor
        self.config = config
        self.server: Optional[ThreadingHTTPServer] = None
        self.server_thread: Optional[threading.Thread] = None
        self._shutdown = False

    @property
    def server_address(self):
        """Actual (host, port) once started; useful when port 0 was requested."""
        if self.server is None:
            return None
        return self.server.server_address[:2]

    def start(self) -> None:
        """Start HTTP server in a background thread."""
        if self.server is not None:
            raise RuntimeError("Server already started")

        handler_class = make_handler(self.supervisor, self.config)
        self.server = ThreadingHTTPServer((self.host, self.port), handler_class)

        self.server_thread = threading.Thread(
            target=self._run_server,
            daemon=True,
            name="HTTPServer",
        )
        self.server_thread.start()

        host, port = self.server_address
        logger.info(f"HTTP server started on {host}:{port}")

    def _run_server(self):
        try:
            self.server.serve_forever()
        except Exception as e:
            if not self._shutdown:
                logger.error(f"HTTP server error: {e}")

    def stop(self) -> None:
        """Stop HTTP server."""
        if self.server is None:
            return

        self._shutdown = True
        self.server.shutdown()
        self.server.server_close()

        if self.server_thread:
            self.server_thread.join(timeout=2.0)

        self.server = None
        self.server_thread = None
        logger.info("HTTP server stopped")
