"""
Contract tests for the rxrelay HTTP surface.

Runs RelayHTTPServer on an ephemeral port with a ProcessSupervisor driving
FakeProcess instances, and talks to it with httpx.
"""

import json
import threading

import httpx
import pytest

from _relay_harness import wait_for
from rxrelay.audio.wav import WAV_HEADER_SIZE, make_wav_header
from rxrelay.http import RelayHTTPServer


@pytest.fixture
def http_server(supervisor, relay_config):
    server = RelayHTTPServer("127.0.0.1", 0, supervisor, relay_config)
    server.start()
    yield server
    server.stop()


@pytest.fixture
def client(http_server):
    host, port = http_server.server_address
    with httpx.Client(base_url=f"http://{host}:{port}", timeout=5.0) as c:
        yield c


class TestControlEndpoints:
    """Tests for start/stop/status."""

    @pytest.mark.timeout(10)
    def test_status_when_stopped(self, client):
        r = client.get("/api/op25/status")
        assert r.status_code == 200
        assert r.json() == {"running": False, "flags": None, "pid": None}

    @pytest.mark.timeout(10)
    def test_start_then_status_then_stop(self, client, supervisor):
        r = client.post("/api/op25/start", json={"flags": ["-v", "9"]})
        assert r.status_code == 200
        assert r.json() == {"started": True}

        status = client.get("/api/op25/status").json()
        assert status["running"] is True
        assert status["flags"] == ["-v", "9"]

        r = client.post("/api/op25/stop")
        assert r.status_code == 200
        assert r.json() == {"started": False}
        assert not supervisor.is_running()

    @pytest.mark.timeout(10)
    def test_start_with_empty_body_uses_default_args(self, client, relay_config):
        r = client.post("/api/op25/start")
        assert r.status_code == 200
        assert client.get("/api/op25/status").json()["flags"] == relay_config.default_args

    @pytest.mark.timeout(10)
    def test_stop_when_not_running_is_conflict(self, client):
        r = client.post("/api/op25/stop")
        assert r.status_code == 409
        assert r.json() == {"started": False, "error": "rx process not running"}

    @pytest.mark.timeout(15)
    def test_concurrent_stops_yield_one_success(self, client, http_server):
        assert client.post("/api/op25/start", json={"flags": []}).status_code == 200
        host, port = http_server.server_address
        codes = []
        lock = threading.Lock()

        def stop():
            r = httpx.post(f"http://{host}:{port}/api/op25/stop", timeout=5.0)
            with lock:
                codes.append(r.status_code)

        threads = [threading.Thread(target=stop) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10.0)

        assert sorted(codes) == [200, 409, 409, 409]

    @pytest.mark.timeout(10)
    @pytest.mark.parametrize("body", [b"{not json", b"[1, 2]", b'{"flags": "-v 9"}', b'{"flags": [1, 2]}'])
    def test_start_rejects_bad_body(self, client, supervisor, body):
        r = client.post("/api/op25/start", content=body, headers={"Content-Type": "application/json"})
        assert r.status_code == 400
        assert r.json()["started"] is False
        assert not supervisor.is_running()

    @pytest.mark.timeout(10)
    def test_spawn_failure_is_server_error(self, client, fake_rx, supervisor):
        fake_rx.fail_spawn = FileNotFoundError("python3: not found")
        r = client.post("/api/op25/start", json={"flags": []})
        assert r.status_code == 500
        body = r.json()
        assert body["started"] is False
        assert "python3" in body["error"]
        assert not supervisor.is_running()

    @pytest.mark.timeout(10)
    def test_wrong_method_and_unknown_path(self, client):
        assert client.get("/api/op25/start").status_code == 405
        assert client.post("/api/op25/status").status_code == 405
        assert client.get("/nope").status_code == 404

    @pytest.mark.timeout(10)
    def test_health(self, client):
        body = client.get("/health").json()
        assert body["status"] == "ok"
        assert body["rx_running"] is False
        assert body["uptime_sec"] >= 0


class TestStreamingEndpoints:
    """Tests for /audio.wav and /stream."""

    @pytest.mark.timeout(10)
    def test_streams_unavailable_while_stopped(self, client):
        assert client.get("/audio.wav").status_code == 503
        assert client.get("/stream").status_code == 503

    @pytest.mark.timeout(15)
    def test_audio_stream_sends_header_then_pcm(self, client, supervisor):
        client.post("/api/op25/start", json={"flags": []})
        audio = supervisor.audio_broadcaster

        with client.stream("GET", "/audio.wav") as r:
            assert r.status_code == 200
            assert r.headers["content-type"] == "audio/wav"
            assert wait_for(lambda: audio.client_count() == 1)
            audio.broadcast(b"\x01\x02\x03\x04")

            received = b""
            for chunk in r.iter_raw():
                received += chunk
                if len(received) >= WAV_HEADER_SIZE + 4:
                    break

        assert received[:WAV_HEADER_SIZE] == make_wav_header(8000, 1)
        assert received[WAV_HEADER_SIZE:WAV_HEADER_SIZE + 4] == b"\x01\x02\x03\x04"
        # Client went away; the disconnect watcher releases the subscription
        assert wait_for(lambda: audio.client_count() == 0, timeout=5.0)

    @pytest.mark.timeout(15)
    def test_log_stream_replays_then_streams_live(self, client, supervisor, fake_rx):
        client.post("/api/op25/start", json={"flags": []})
        logs = supervisor.log_broadcaster
        proc = fake_rx.processes[0]
        proc.emit_stdout("before connect")
        assert wait_for(lambda: "[stdout] before connect" in logs.history())

        events = []
        with client.stream("GET", "/stream") as r:
            assert r.status_code == 200
            assert r.headers["content-type"] == "text/event-stream"
            assert r.headers["access-control-allow-origin"] == "*"
            for line in r.iter_lines():
                if not line.startswith("data: "):
                    continue
                events.append(line[len("data: "):])
                if events[-1] == "[stdout] before connect":
                    proc.emit_stdout("after connect")
                if events[-1] == "[stdout] after connect":
                    break

        assert events[0].startswith("[system] rx process starting at ")
        assert events.count("[stdout] before connect") == 1
        assert events[-1] == "[stdout] after connect"
        assert wait_for(lambda: logs.client_count() == 0, timeout=5.0)

    @pytest.mark.timeout(15)
    def test_stop_ends_open_streams(self, client, http_server, supervisor):
        client.post("/api/op25/start", json={"flags": []})
        audio = supervisor.audio_broadcaster
        host, port = http_server.server_address

        with httpx.Client(base_url=f"http://{host}:{port}", timeout=5.0) as listener:
            with listener.stream("GET", "/audio.wav") as r:
                assert wait_for(lambda: audio.client_count() == 1)
                assert client.post("/api/op25/stop").status_code == 200
                received = b"".join(r.iter_raw())

        assert received == make_wav_header(8000, 1)
        assert client.get("/audio.wav").status_code == 503


class TestTrunkEndpoints:
    """Tests for trunk file read/write."""

    @pytest.mark.timeout(10)
    def test_read_missing_file_reports_error(self, client):
        r = client.get("/api/trunk/read")
        assert r.status_code == 200
        assert "error" in r.json()

    @pytest.mark.timeout(10)
    def test_write_then_read(self, client, relay_config):
        r = client.post("/api/trunk/write", json={"sysname": "County", "control_channel": "851.0125"})
        assert r.status_code == 200
        assert r.json() == {"success": True}

        r = client.get("/api/trunk/read")
        assert r.json() == {"sysname": "County", "control_channel": "851.0125"}
        assert relay_config.trunk_path.exists()

    @pytest.mark.timeout(10)
    def test_write_rejects_empty_values(self, client):
        r = client.post("/api/trunk/write", json={"sysname": "", "control_channel": "851.0125"})
        assert r.status_code == 200
        body = r.json()
        assert body["success"] is False
        assert "sysname" in body["error"]

    @pytest.mark.timeout(10)
    def test_write_rejects_bad_json(self, client):
        r = client.post("/api/trunk/write", content=json.dumps([1]).encode(),
                        headers={"Content-Type": "application/json"})
        assert r.status_code == 400
