"""
Log fan-out broadcaster.

Reads the rx process's stdout and stderr line by line, tags each line with
its source, keeps the most recent lines as history and pushes every line to
connected /stream (Server-Sent Events) clients.

Backpressure policy is eviction: a client whose queue is full when a line
arrives is removed and its queue closed. Its stream simply ends.

New clients get the whole history replayed first. The history snapshot and
the registration of the live queue happen under the same lock that
broadcast() holds while appending and fanning out, so every line reaches a
new client exactly once, either in the replay or live.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections import deque
from datetime import datetime, timezone
from typing import BinaryIO, Dict, List, Optional, Tuple

from rxrelay.subscriber import SUBSCRIBER_CAPACITY, SubscriberQueue

logger = logging.getLogger(__name__)

# Lines from the rx process are echoed here so they reach the service log
rx_logger = logging.getLogger("rxrelay.logs.rx")

HISTORY_CAPACITY = 1000

STDOUT_TAG = "[stdout]"
STDERR_TAG = "[stderr]"
SYSTEM_TAG = "[system]"

SERVE_POLL_SEC = 0.5

CRLF = "\r\n"


def format_sse(line: str) -> bytes:
    """
    Encode one line as an SSE data frame.

    Embedded newlines are split over several data: fields so a single line
    can never terminate the frame early.
    """
    parts = line.split("\n")
    return ("".join(f"data: {part}\n" for part in parts) + "\n").encode("utf-8")


class LogBroadcaster:
    """
    Fan-out of tagged rx log lines with replay-on-connect.

    One instance exists per rx process generation and is bound to that
    process's two output streams.
    """

    def __init__(
        self,
        stdout: Optional[BinaryIO],
        stderr: Optional[BinaryIO],
        history_capacity: int = HISTORY_CAPACITY,
        queue_capacity: int = SUBSCRIBER_CAPACITY,
    ) -> None:
        self._stdout = stdout
        self._stderr = stderr
        self._queue_capacity = queue_capacity

        self._lock = threading.Lock()
        self._clients: Dict[str, SubscriberQueue] = {}
        self._history: deque[str] = deque(maxlen=history_capacity)
        # id(stream) -> ingest thread reading it
        self._readers: Dict[int, threading.Thread] = {}
        self._started = False
        self._closed = False

        self.start_time = datetime.now(timezone.utc).astimezone()
        self.broadcast(
            f"{SYSTEM_TAG} rx process starting at {self.start_time.isoformat(timespec='seconds')}"
        )

    def start(self) -> None:
        """
        Start one ingest thread per present stream.

        A missing stream produces a warning line instead of a thread.
        """
        if self._started:
            logger.warning("LogBroadcaster already started")
            return
        self._started = True

        self.broadcast(f"{SYSTEM_TAG} Starting log broadcaster")
        for stream, tag, name in (
            (self._stdout, STDOUT_TAG, "stdout"),
            (self._stderr, STDERR_TAG, "stderr"),
        ):
            if stream is None:
                msg = f"{SYSTEM_TAG} Warning: no {name} pipe, skipping {name} log streaming"
                logger.warning(msg)
                self.broadcast(msg)
                continue
            thread = threading.Thread(
                target=self._read_stream,
                args=(stream, tag),
                daemon=True,
                name=f"LogIngest-{name}",
            )
            self._readers[id(stream)] = thread
            thread.start()

    def _read_stream(self, stream: BinaryIO, tag: str) -> None:
        """Ingest newline-delimited text from one stream until EOF or error."""
        self.broadcast(f"{SYSTEM_TAG} Starting to read from {tag} pipe")
        try:
            while True:
                raw = stream.readline()
                # b"" or "" at EOF, depending on the stream mode
                if not raw:
                    break
                if isinstance(raw, bytes):
                    text = raw.decode("utf-8", errors="replace")
                else:
                    text = str(raw)
                self.broadcast(f"{tag} {text.rstrip(CRLF)}")
        except (OSError, ValueError) as e:
            # ValueError: the handle was closed under us during shutdown
            if not self._closed:
                msg = f"{SYSTEM_TAG} Error reading pipe {tag}: {e}"
                logger.error(msg)
                self.broadcast(msg)
        self.broadcast(f"{SYSTEM_TAG} {tag} pipe closed")

    def broadcast(self, line: str) -> None:
        """
        Record line in history and push it to every client.

        Clients whose queue is full are evicted.
        """
        rx_logger.debug(line)

        evicted = []
        with self._lock:
            self._history.append(line)
            for subscriber_id, queue in list(self._clients.items()):
                if not queue.offer(line):
                    del self._clients[subscriber_id]
                    queue.close()
                    evicted.append(subscriber_id)

        for subscriber_id in evicted:
            logger.warning(f"Evicted slow log client {subscriber_id}")

    def subscribe_with_replay(self) -> Tuple[List[str], str, SubscriberQueue]:
        """
        Snapshot history and register a live queue in one critical section.

        Returns:
            (replay_lines, subscriber_id, queue)
        """
        subscriber_id = str(uuid.uuid4())
        queue = SubscriberQueue(self._queue_capacity)
        with self._lock:
            replay = list(self._history)
            if self._closed:
                queue.close()
            else:
                self._clients[subscriber_id] = queue
        logger.debug(f"Log client subscribed: {subscriber_id} (replaying {len(replay)} lines)")
        return replay, subscriber_id, queue

    def unsubscribe(self, subscriber_id: str) -> None:
        """Remove and close a client queue. Safe after eviction."""
        with self._lock:
            queue = self._clients.pop(subscriber_id, None)
            if queue is not None:
                queue.close()
        if queue is not None:
            logger.debug(f"Log client unsubscribed: {subscriber_id}")

    def history(self) -> List[str]:
        with self._lock:
            return list(self._history)

    def history_length(self) -> int:
        with self._lock:
            return len(self._history)

    def client_count(self) -> int:
        with self._lock:
            return len(self._clients)

    def serve(self, sink: BinaryIO, cancel: threading.Event) -> None:
        """
        Stream replay then live lines to sink as SSE frames.

        Args:
            sink: Writable binary stream
            cancel: Set when the client disconnects
        """
        replay, subscriber_id, queue = self.subscribe_with_replay()
        try:
            try:
                for line in replay:
                    sink.write(format_sse(line))
                sink.flush()
            except (OSError, ValueError) as e:
                logger.debug(f"Log client {subscriber_id} gone during replay: {e}")
                return

            while not cancel.is_set():
                line = queue.get(timeout=SERVE_POLL_SEC)
                if line is None:
                    if queue.closed:
                        break
                    continue
                try:
                    sink.write(format_sse(line))
                    sink.flush()
                except (OSError, ValueError) as e:
                    logger.debug(f"Log client {subscriber_id} write failed: {e}")
                    break
        finally:
            self.unsubscribe(subscriber_id)

    def shutdown(self, timeout: float = 1.0) -> None:
        """
        Release clients, join ingest threads and close the streams. Idempotent.

        Called after the rx process has been killed, so the ingest threads
        normally see EOF on their own; closing the handles covers descendants
        that kept a pipe open.

        Args:
            timeout: Maximum time to wait for each ingest thread
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
            for queue in self._clients.values():
                queue.close()
            self._clients.clear()

        for stream in (self._stdout, self._stderr):
            if stream is None:
                continue
            reader = self._readers.get(id(stream))
            if reader is not None and reader is not threading.current_thread():
                reader.join(timeout=timeout)
                if reader.is_alive():
                    # close() would wait on the reader's buffer lock
                    logger.warning(f"{reader.name} thread did not terminate within timeout")
                    continue
            try:
                stream.close()
            except OSError:
                pass
        logger.info("Log broadcaster stopped")
