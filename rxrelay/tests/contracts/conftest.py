"""
Shared pytest fixtures for rxrelay contract tests.
"""
import threading

import pytest

from _relay_harness import FakeRx, wait_for
from rxrelay.config import RelayConfig
from rxrelay.process.supervisor import ProcessSupervisor


@pytest.fixture
def relay_config(tmp_path):
    """Config pointing at a temp rx directory with an ephemeral audio port."""
    return RelayConfig(
        rx_path=str(tmp_path),
        audio_addr="127.0.0.1:0",
        niceness=None,
        stop_timeout_sec=1.0,
        default_args=["-v", "9"],
    )


@pytest.fixture
def fake_rx():
    rx = FakeRx()
    yield rx
    rx.cleanup()


@pytest.fixture
def supervisor(relay_config, fake_rx):
    """ProcessSupervisor driving FakeProcess instances."""
    sup = ProcessSupervisor(relay_config, popen=fake_rx.popen, kill_group=fake_rx.kill_group)
    yield sup
    sup.stop()


@pytest.fixture(autouse=False)
def thread_leak_guard():
    """
    Optional fixture to detect thread leaks between tests.

    Request it explicitly in tests that assert shutdown completeness.
    """
    before = set(t.ident for t in threading.enumerate())
    yield
    wait_for(lambda: not (set(t.ident for t in threading.enumerate()) - before), timeout=2.0)
    leaked = [t for t in threading.enumerate() if t.ident not in before]
    if leaked:
        thread_info = '\n'.join(f"  - {t.name} (daemon={t.daemon})" for t in leaked)
        assert False, f"Thread leak detected, shutdown incomplete.\nLeaked threads:\n{thread_info}"
