"""Output relay: drains child stdout/stderr into configured sinks.

artifact-launcher runtime module v0.1.0

One drain thread per stream performs blocking ``read1()`` calls so the
child never stalls on a full pipe. Each chunk is written, as raw bytes, to
every sink of its stream (console passthrough and/or capture file) as soon
as it arrives, then handed to the ``on_output`` observer used for readiness
scanning. Output without a trailing newline is delivered too.

A sink that rejects a write is logged and dropped for the rest of the run;
the drain keeps going. Drains stop at end-of-stream and close their capture
files.
"""

from __future__ import annotations

import codecs
import logging
import sys
import threading
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import IO, Any, Optional

from .types import OutputSink

__all__ = ["OutputRelay", "OutputObserver"]

logger = logging.getLogger(__name__)

# Largest chunk a drain reads at once
READ_CHUNK_SIZE = 65536

# Observer signature: (stream name, decoded chunk)
OutputObserver = Callable[[str, str], None]


class _ConsoleSink:
    """Passthrough to one of the supervising process's own streams."""

    def __init__(self, name: str, stream: Any) -> None:
        self.name = name
        self._stream = stream
        self._binary = getattr(stream, "buffer", None)

    def write(self, data: bytes) -> None:
        if self._binary is not None:
            self._binary.write(data)
            self._binary.flush()
        else:
            self._stream.write(data.decode("utf-8", errors="replace"))
            self._stream.flush()

    def close(self) -> None:
        # Never close the supervising process's console
        pass


class _FileSink:
    """Capture file, opened for the lifetime of the child process."""

    def __init__(self, name: str, path: Path) -> None:
        self.name = name
        self.path = path
        path.parent.mkdir(parents=True, exist_ok=True)
        self._file: Optional[IO[bytes]] = open(path, "wb")

    def write(self, data: bytes) -> None:
        if self._file is None:
            raise ValueError(f"Capture file {self.path} is closed")
        self._file.write(data)
        self._file.flush()

    def close(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None


def _default_console(name: str) -> Any:
    return sys.stdout if name == "stdout" else sys.stderr


class OutputRelay:
    """Concurrently drains child output streams to their sinks.

    Capture files are opened in the constructor, before the child starts,
    so an unwritable capture path fails the launch instead of the drain.

    Example:
        relay = OutputRelay(
            {"stdout": OutputSink.both("out.log"), "stderr": OutputSink.inherit()},
            on_output=observer,
        )
        process = subprocess.Popen(argv, stdout=PIPE, stderr=PIPE)
        relay.start({"stdout": process.stdout, "stderr": process.stderr})
        ...
        relay.join(timeout=2.0)
        relay.close()
    """

    def __init__(
        self,
        sinks: Mapping[str, OutputSink],
        on_output: OutputObserver | None = None,
        console: Mapping[str, Any] | None = None,
    ) -> None:
        """Open sinks for each stream.

        Args:
            sinks: Sink configuration per stream name ("stdout", "stderr")
            on_output: Called with (stream name, decoded text) after each chunk
            console: Console streams per name (default: sys.stdout / sys.stderr)

        Raises:
            OSError: If a capture file cannot be opened
        """
        self._on_output = on_output
        self._lock = threading.Lock()
        self._threads: list[threading.Thread] = []
        self._sinks: dict[str, list[Any]] = {}

        console = console or {}
        try:
            for name, sink in sinks.items():
                opened: list[Any] = []
                self._sinks[name] = opened
                if sink.writes_console:
                    opened.append(_ConsoleSink(name, console.get(name) or _default_console(name)))
                if sink.writes_file and sink.path is not None:
                    opened.append(_FileSink(name, sink.path))
        except OSError:
            self.close()
            raise

    @property
    def is_running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def start(self, streams: Mapping[str, IO[bytes] | None], label: str = "") -> None:
        """Start one drain thread per stream.

        Args:
            streams: Readable binary streams per name (None entries are skipped)
            label: Thread name prefix, typically the child pid
        """
        for name, stream in streams.items():
            if stream is None:
                continue
            thread = threading.Thread(
                target=self._drain,
                args=(name, stream),
                name=f"relay-{label}-{name}" if label else f"relay-{name}",
                daemon=True,
            )
            self._threads.append(thread)
            thread.start()

    def join(self, timeout: float | None = None) -> bool:
        """Wait for all drains to reach end-of-stream.

        Returns:
            True if every drain finished within the timeout
        """
        for thread in self._threads:
            thread.join(timeout)
        finished = not self.is_running
        if not finished:
            logger.debug("Output drains still running after join timeout")
        return finished

    def close(self) -> None:
        """Close every remaining sink. Safe to call more than once."""
        with self._lock:
            for name, sinks in self._sinks.items():
                for sink in sinks:
                    self._close_sink(sink)
                sinks.clear()

    def _drain(self, name: str, stream: IO[bytes]) -> None:
        """Read a stream chunk by chunk until end-of-stream."""
        # Chunks may split a multi-byte character
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        read = getattr(stream, "read1", stream.read)
        try:
            while True:
                chunk = read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                self._dispatch(name, chunk, decoder.decode(chunk))
            self._notify(name, decoder.decode(b"", final=True))
        except (OSError, ValueError) as e:
            # Stream closed underneath us (process reaped, pipe torn down)
            logger.debug(f"Drain {name} stopped reading: {e}")
        finally:
            with self._lock:
                for sink in self._sinks.get(name, []):
                    self._close_sink(sink)
                self._sinks[name] = []
            try:
                stream.close()
            except OSError:
                pass
            logger.debug(f"Drain {name} reached end of stream")

    def _dispatch(self, name: str, chunk: bytes, text: str) -> None:
        with self._lock:
            sinks = self._sinks.get(name, [])
            for sink in list(sinks):
                try:
                    sink.write(chunk)
                except (OSError, ValueError) as e:
                    logger.warning(f"Dropping {name} sink {sink.__class__.__name__}: {e}")
                    sinks.remove(sink)
                    self._close_sink(sink)

        self._notify(name, text)

    def _notify(self, name: str, text: str) -> None:
        if text and self._on_output is not None:
            self._on_output(name, text)

    @staticmethod
    def _close_sink(sink: Any) -> None:
        try:
            sink.close()
        except OSError as e:
            logger.debug(f"Error closing sink: {e}")
