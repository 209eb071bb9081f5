"""
Contract tests for RelayService lifecycle and the command-line entry point.
"""

import logging

import httpx
import pytest

from rxrelay import __main__ as entry
from rxrelay.config import RelayConfig
from rxrelay.service import RelayService


@pytest.fixture
def service_config(relay_config):
    relay_config.host = "127.0.0.1"
    relay_config.port = 0
    return relay_config


class TestRelayService:
    """Tests for service start/stop."""

    @pytest.mark.timeout(15)
    def test_start_serves_http_and_stop_is_idempotent(self, service_config, supervisor, fake_rx):
        service = RelayService(service_config, supervisor=supervisor)
        service.start()
        host, port = service.http_server.server_address

        r = httpx.post(f"http://{host}:{port}/api/op25/start", json={"flags": []}, timeout=5.0)
        assert r.status_code == 200
        assert supervisor.is_running()

        service.stop()
        service.stop()

        assert not supervisor.is_running()
        assert fake_rx.processes[0].returncode is not None
        assert service.http_server.server is None

    @pytest.mark.timeout(10)
    def test_rx_is_not_started_automatically(self, service_config, supervisor, fake_rx):
        service = RelayService(service_config, supervisor=supervisor)
        service.start()
        try:
            assert not supervisor.is_running()
            assert fake_rx.processes == []
        finally:
            service.stop()


class TestEntryPoint:
    """Tests for main() and log file handling."""

    def test_main_rejects_missing_rx_path(self, monkeypatch, tmp_path):
        monkeypatch.delenv("RELAY_RX_PATH", raising=False)
        monkeypatch.setenv("RELAY_ENV_FILE", str(tmp_path / "absent.env"))
        assert entry.main() == 1

    def test_file_handler_writes_records(self, tmp_path):
        log_path = tmp_path / "relay.log"
        root = logging.getLogger()
        before = list(root.handlers)

        entry._add_file_handler(str(log_path))
        added = [h for h in root.handlers if h not in before]
        try:
            assert len(added) == 1
            logging.getLogger("rxrelay.test").warning("file handler check")
            added[0].flush()
            assert "file handler check" in log_path.read_text(encoding="utf-8")
        finally:
            for h in added:
                root.removeHandler(h)
                h.close()

    def test_unwritable_log_file_is_ignored(self, tmp_path):
        root = logging.getLogger()
        before = list(root.handlers)
        entry._add_file_handler(str(tmp_path / "missing-dir" / "relay.log"))
        assert root.handlers == before

    def test_config_defaults_are_usable_by_service(self, tmp_path):
        config = RelayConfig(rx_path=str(tmp_path), host="127.0.0.1", port=0)
        service = RelayService(config)
        assert service.supervisor.status().running is False
