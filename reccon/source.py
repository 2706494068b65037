#!/usr/bin/env python3
"""Capture process wrapper that hands out fixed-size PCM chunks."""
from __future__ import annotations

import logging
import os
import queue
import subprocess
import threading
from collections.abc import Iterator, Sequence
from typing import IO

from reccon.segmentation import SAMPLE_WIDTH

LOG = logging.getLogger("source")

DEFAULT_QUEUE_CHUNKS = 16


def arecord_command(device: str, sample_rate: int) -> list[str]:
    return [
        "arecord",
        "-D", device,
        "-c", "1",
        "-f", "S16_LE",
        "-r", str(sample_rate),
        "-t", "raw",
        "-q",
        "-",
    ]


def read_chunk(stream: IO[bytes], size: int) -> bytes:
    """Read up to ``size`` bytes, returning fewer only at end of file."""
    buf = bytearray()
    while len(buf) < size:
        data = stream.read(size - len(buf))
        if not data:
            break
        buf.extend(data)
    return bytes(buf)


class ChunkSource:
    """
    Runs the capture command and reads its stdout on a dedicated thread.

    Chunks are handed over through a bounded queue so a slow consumer stalls the
    reader. The stream always ends with a single empty chunk; the chunk before
    it may be short.
    """

    def __init__(
        self,
        command: Sequence[str],
        chunk_size: int,
        *,
        queue_chunks: int = DEFAULT_QUEUE_CHUNKS,
    ) -> None:
        if chunk_size <= 0 or chunk_size % SAMPLE_WIDTH:
            raise ValueError("chunk_size must be a positive multiple of 2 bytes")
        self.command = list(command)
        self.chunk_size = chunk_size
        self._queue: queue.Queue[bytes] = queue.Queue(maxsize=max(1, queue_chunks))
        self._process: subprocess.Popen | None = None
        self._thread: threading.Thread | None = None
        self._stopping = threading.Event()

    def start(self) -> None:
        if self._process is not None:
            raise RuntimeError("ChunkSource already started")
        self._process = subprocess.Popen(
            self.command,
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
            stdin=subprocess.DEVNULL,
            bufsize=0,
            start_new_session=True,
            env=os.environ.copy(),
        )
        self._thread = threading.Thread(target=self._reader, name="chunk-reader", daemon=True)
        self._thread.start()
        LOG.info("capture started: %s", " ".join(self.command))

    def _reader(self) -> None:
        proc = self._process
        assert proc is not None and proc.stdout is not None
        try:
            while True:
                chunk = read_chunk(proc.stdout, self.chunk_size)
                if len(chunk) % SAMPLE_WIDTH:
                    LOG.warning("dropping odd trailing byte at end of capture")
                    chunk = chunk[:-1]
                if not chunk:
                    break
                self._queue.put(chunk)
                if len(chunk) < self.chunk_size:
                    break
        except (OSError, ValueError) as exc:
            if not self._stopping.is_set():
                LOG.error("capture read failed: %s", exc)
        finally:
            returncode = proc.wait()
            if returncode and not self._stopping.is_set():
                LOG.warning("capture process exited with code %s", returncode)
            self._queue.put(b"")

    def chunks(self) -> Iterator[bytes]:
        """Yield chunks up to and including the terminating empty chunk."""
        if self._process is None:
            self.start()
        while True:
            chunk = self._queue.get()
            yield chunk
            if not chunk:
                return

    def stop(self, timeout: float = 1.0) -> None:
        """Terminate the capture process; the reader then ends the stream."""
        self._stopping.set()
        proc = self._process
        if proc is None or proc.poll() is not None:
            return
        try:
            proc.terminate()
            proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            proc.kill()
        except OSError as exc:
            LOG.warning("failed to stop capture process: %s", exc)

    def close(self) -> None:
        self.stop()
        if self._thread is not None:
            self._thread.join(timeout=1.0)
        if self._process is not None and self._process.stdout:
            self._process.stdout.close()
