"""
Audio fan-out broadcaster.

Receives raw 16-bit little-endian PCM datagrams from the rx process on a
loopback UDP socket and hands a private copy of each datagram to every
connected /audio.wav client.

Backpressure policy is drop-new: when a client's queue is full, the arriving
datagram is discarded for that client only. The client keeps its earlier
audio and stays connected.
"""

from __future__ import annotations

import logging
import socket
import threading
import uuid
from typing import BinaryIO, Dict, Optional, Tuple, Union

from rxrelay.audio.wav import make_wav_header
from rxrelay.errors import TransportError
from rxrelay.subscriber import SUBSCRIBER_CAPACITY, SubscriberQueue

logger = logging.getLogger(__name__)

DEFAULT_SAMPLE_RATE = 8000
DEFAULT_CHANNELS = 1
BYTES_PER_SAMPLE = 2

# Receive buffer requested from the kernel to absorb scheduling jitter
RECV_BUFFER_BYTES = 65536 * 10

# Socket timeout so the ingest thread re-checks the stop flag
RECV_POLL_SEC = 0.5

# How long serve() waits on the queue before re-checking cancel
SERVE_POLL_SEC = 0.5

Address = Union[str, Tuple[str, int]]


def parse_address(address: Address) -> Tuple[str, int]:
    """
    Normalize an address to a (host, port) tuple.

    Args:
        address: "host:port" string or (host, port) tuple

    Raises:
        TransportError: If the address cannot be parsed
    """
    if isinstance(address, tuple):
        host, port = address
        return str(host), int(port)

    host, sep, port_str = str(address).rpartition(":")
    if not sep or not host:
        raise TransportError(f"Invalid audio address (expected host:port): {address!r}")
    try:
        port = int(port_str)
    except ValueError:
        raise TransportError(f"Invalid port in audio address: {address!r}") from None
    if not 0 <= port <= 65535:
        raise TransportError(f"Port out of range in audio address: {address!r}")
    return host, port


class AudioBroadcaster:
    """
    Fan-out of PCM datagrams to streaming WAV clients.

    One instance exists per rx process generation. It is created by the
    supervisor, started once, and discarded on stop; it is never restarted.
    """

    def __init__(
        self,
        sample_rate: int = DEFAULT_SAMPLE_RATE,
        channels: int = DEFAULT_CHANNELS,
        queue_capacity: int = SUBSCRIBER_CAPACITY,
    ) -> None:
        self.sample_rate = sample_rate
        self.channels = channels
        self._queue_capacity = queue_capacity

        self._lock = threading.Lock()
        self._clients: Dict[str, SubscriberQueue] = {}

        self._sock: Optional[socket.socket] = None
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._address: Optional[Tuple[str, int]] = None

    @property
    def frame_bytes(self) -> int:
        """Bytes in one 100 ms frame (1600 at 8000 Hz mono)."""
        return self.sample_rate * self.channels * BYTES_PER_SAMPLE // 10

    @property
    def address(self) -> Optional[Tuple[str, int]]:
        """Bound (host, port), available after start()."""
        return self._address

    def start(self, address: Address) -> None:
        """
        Bind the datagram socket and start the ingest thread.

        Args:
            address: "host:port" or (host, port) to bind

        Raises:
            TransportError: If the socket cannot be bound
            RuntimeError: If already started or already shut down
        """
        if self._thread is not None or self._stop_event.is_set():
            raise RuntimeError("AudioBroadcaster can only be started once")

        host, port = parse_address(address)
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.bind((host, port))
        except OSError as e:
            sock.close()
            raise TransportError(f"Failed to listen on UDP {host}:{port}: {e}") from e

        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF, RECV_BUFFER_BYTES)
        except OSError as e:
            logger.warning(f"Could not set UDP receive buffer to {RECV_BUFFER_BYTES}: {e}")
        sock.settimeout(RECV_POLL_SEC)

        self._sock = sock
        self._address = sock.getsockname()[:2]
        self._thread = threading.Thread(
            target=self._ingest_loop,
            args=(sock,),
            daemon=True,
            name="AudioIngest",
        )
        self._thread.start()
        logger.info(
            f"Audio broadcaster started on {self._address[0]}:{self._address[1]} "
            f"(PCM S16_LE, {self.sample_rate}Hz, {self.channels} channel)"
        )

    def _ingest_loop(self, sock: socket.socket) -> None:
        """Read datagrams until shutdown or an unexpected socket error."""
        read_size = self.frame_bytes
        try:
            while not self._stop_event.is_set():
                try:
                    data, _ = sock.recvfrom(read_size)
                except socket.timeout:
                    continue
                except OSError as e:
                    # Closing the socket in shutdown() lands here
                    if not self._stop_event.is_set():
                        logger.error(f"UDP read error: {e}")
                    break

                n = len(data)
                if n == 0:
                    continue
                if n % 2:
                    # Keep 16-bit sample alignment
                    data = data[: n - 1]
                    if not data:
                        continue
                self.broadcast(data)
        finally:
            logger.debug("Audio ingest thread exiting")

    def broadcast(self, data: bytes) -> None:
        """
        Offer a copy of data to every client; full queues drop it.

        Args:
            data: PCM payload (already sample-aligned)
        """
        with self._lock:
            for queue in self._clients.values():
                # bytes() gives each client its own copy
                queue.offer(bytes(data))

    def subscribe(self) -> Tuple[str, SubscriberQueue]:
        """
        Register a new client queue.

        Returns:
            (subscriber_id, queue)
        """
        subscriber_id = str(uuid.uuid4())
        queue = SubscriberQueue(self._queue_capacity)
        with self._lock:
            if self._stop_event.is_set():
                queue.close()
            else:
                self._clients[subscriber_id] = queue
        logger.debug(f"Audio client subscribed: {subscriber_id}")
        return subscriber_id, queue

    def unsubscribe(self, subscriber_id: str) -> None:
        """Remove and close a client queue. Safe to call more than once."""
        with self._lock:
            queue = self._clients.pop(subscriber_id, None)
            if queue is not None:
                queue.close()
        if queue is not None:
            stats = queue.stats()
            logger.debug(
                f"Audio client unsubscribed: {subscriber_id} "
                f"(delivered={stats.accepted}, dropped={stats.rejected})"
            )

    def client_count(self) -> int:
        with self._lock:
            return len(self._clients)

    def serve(self, sink: BinaryIO, cancel: threading.Event) -> None:
        """
        Stream WAV audio to sink until cancel fires or a write fails.

        Writes the WAV header and flushes it immediately, then delivers each
        queued chunk with a flush. The client is always unsubscribed on exit.

        Args:
            sink: Writable binary stream (e.g. a request handler's wfile)
            cancel: Set when the client disconnects
        """
        subscriber_id, queue = self.subscribe()
        try:
            try:
                sink.write(make_wav_header(self.sample_rate, self.channels))
                sink.flush()
            except (OSError, ValueError) as e:
                logger.debug(f"Audio client {subscriber_id} gone before header: {e}")
                return

            while not cancel.is_set():
                chunk = queue.get(timeout=SERVE_POLL_SEC)
                if chunk is None:
                    if queue.closed:
                        break
                    continue
                try:
                    sink.write(chunk)
                    sink.flush()
                except (OSError, ValueError) as e:
                    logger.debug(f"Audio client {subscriber_id} write failed: {e}")
                    break
        finally:
            self.unsubscribe(subscriber_id)

    def shutdown(self, timeout: float = 1.0) -> None:
        """
        Stop the ingest thread and close the socket. Idempotent.

        Live client queues are closed so their serve() loops end promptly.

        Args:
            timeout: Maximum time to wait for the ingest thread
        """
        if self._stop_event.is_set():
            return
        self._stop_event.set()

        sock = self._sock
        self._sock = None
        if sock is not None:
            try:
                # Wakes a recvfrom() blocked in another thread
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            sock.close()

        with self._lock:
            for queue in self._clients.values():
                queue.close()
            self._clients.clear()

        thread = self._thread
        if thread is not None and thread is not threading.current_thread() and thread.is_alive():
            thread.join(timeout=timeout)
            if thread.is_alive():
                logger.warning("Audio ingest thread did not terminate within timeout")

        logger.info("Audio broadcaster stopped")
