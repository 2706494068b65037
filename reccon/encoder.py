#!/usr/bin/env python3
"""Streaming ffmpeg encoder for one segment at a time."""
from __future__ import annotations

import logging
import os
import queue
import subprocess
import threading
import time
from dataclasses import dataclass

from reccon.ffmpeg_io import encode_output_args, pcm_pipe_input_args, probe_stream_args
from reccon.segmentation import SAMPLE_RATE

LOG = logging.getLogger("encoder")


@dataclass
class EncoderResult:
    partial_path: str | None
    success: bool
    returncode: int | None
    error: Exception | None
    stderr: str | None
    bytes_sent: int
    dropped_chunks: int


@dataclass(frozen=True)
class AudioInfo:
    sample_rate: int
    samples: int


class StreamingEncoder:
    def __init__(
        self,
        partial_path: str,
        *,
        sample_rate: int = SAMPLE_RATE,
        container_format: str = "opus",
        bitrate: str = "48k",
        queue_chunks: int = 64,
    ) -> None:
        if not partial_path:
            raise ValueError("partial_path is required for StreamingEncoder")
        self.partial_path = partial_path
        self.sample_rate = sample_rate
        self.container_format = container_format
        self.bitrate = bitrate
        self._process: subprocess.Popen | None = None
        self._queue: queue.Queue[bytes | None] = queue.Queue(maxsize=max(1, queue_chunks))
        self._thread: threading.Thread | None = None
        self._bytes_sent = 0
        self._dropped = 0
        self._error: Exception | None = None
        self._stderr: bytes | None = None
        self._returncode: int | None = None
        self._closed = threading.Event()

    def _build_command(self) -> list[str]:
        return [
            "ffmpeg",
            "-hide_banner",
            "-loglevel",
            "error",
            "-y",
            *pcm_pipe_input_args(self.sample_rate, 1),
            *encode_output_args(self.container_format, self.bitrate),
            self.partial_path,
        ]

    def start(self, command: list[str] | None = None) -> None:
        if self._process is not None:
            raise RuntimeError("StreamingEncoder already started")
        directory = os.path.dirname(self.partial_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        try:
            if os.path.exists(self.partial_path):
                os.unlink(self.partial_path)
        except OSError:
            pass
        if command is None:
            command = self._build_command()
        try:
            self._process = subprocess.Popen(
                command,
                stdin=subprocess.PIPE,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
            )
        except OSError as exc:
            self._error = exc
            raise

        self._thread = threading.Thread(
            target=self._pump,
            name=f"encoder-{os.path.basename(self.partial_path)}",
            daemon=True,
        )
        self._thread.start()

    def _pump(self) -> None:
        proc = self._process
        if proc is None:
            self._closed.set()
            return
        try:
            stdin = proc.stdin
            if stdin is None:
                raise RuntimeError("encoder stdin unavailable")
            while True:
                try:
                    chunk = self._queue.get(timeout=0.5)
                except queue.Empty:
                    if proc.poll() is not None:
                        break
                    continue

                if chunk is None:
                    self._queue.task_done()
                    break

                try:
                    stdin.write(chunk)
                    stdin.flush()
                    self._bytes_sent += len(chunk)
                except (OSError, ValueError) as exc:
                    self._error = exc
                    LOG.warning("write to encoder failed for %s: %s", self.partial_path, exc)
                    break
                finally:
                    self._queue.task_done()
        except RuntimeError as exc:
            self._error = exc
        finally:
            try:
                if proc.stdin:
                    proc.stdin.close()
            except OSError:
                pass
            try:
                self._stderr = proc.stderr.read() if proc.stderr else None
            except OSError:
                self._stderr = None
            self._returncode = proc.wait()
            self._closed.set()

    @property
    def failed(self) -> bool:
        return self._error is not None or self._closed.is_set()

    def feed(self, chunk: bytes, timeout: float | None = None) -> bool:
        """Queue ``chunk`` for the encoder, blocking while the queue is full.

        Returns False (and counts a dropped chunk) when the encoder is not
        running or ``timeout`` expires. Never raises.
        """
        if not chunk or self._process is None:
            return False
        payload = bytes(chunk)
        deadline = None if timeout is None else time.monotonic() + timeout
        while not self.failed:
            wait = 0.5
            if deadline is not None:
                wait = min(wait, deadline - time.monotonic())
                if wait <= 0:
                    break
            try:
                self._queue.put(payload, timeout=wait)
                return True
            except queue.Full:
                continue
        self._dropped += 1
        return False

    def close(self, *, timeout: float | None = None) -> EncoderResult:
        if self._process is None:
            return EncoderResult(
                partial_path=self.partial_path,
                success=False,
                returncode=None,
                error=self._error,
                stderr=None,
                bytes_sent=self._bytes_sent,
                dropped_chunks=self._dropped,
            )

        try:
            self._queue.put_nowait(None)
        except queue.Full:
            worker_alive = self._thread is not None and self._thread.is_alive()
            if worker_alive:
                try:
                    # Avoid hanging forever if the worker stopped draining.
                    block_timeout = timeout if timeout is not None else 1.0
                    self._queue.put(None, timeout=block_timeout)
                except queue.Full:
                    worker_alive = False
            if not worker_alive:
                drained = 0
                while True:
                    try:
                        self._queue.get_nowait()
                    except queue.Empty:
                        break
                    else:
                        self._queue.task_done()
                        drained += 1
                self._dropped += drained
                try:
                    self._queue.put_nowait(None)
                except queue.Full:
                    pass

        if self._thread is not None:
            self._thread.join(timeout)

        if self._process.poll() is None:
            try:
                self._process.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                self._process.kill()
                self._returncode = self._process.wait()
        if self._returncode is None:
            self._returncode = self._process.poll()

        success = self._error is None and (self._returncode or 0) == 0
        stderr_text = None
        if self._stderr:
            stderr_text = self._stderr.decode("utf-8", errors="ignore")

        return EncoderResult(
            partial_path=self.partial_path,
            success=success,
            returncode=self._returncode,
            error=self._error,
            stderr=stderr_text,
            bytes_sent=self._bytes_sent,
            dropped_chunks=self._dropped,
        )


def probe_audio(path: str | os.PathLike[str]) -> AudioInfo | None:
    """Read the sample rate and sample count back from a finalized file."""
    if not os.path.exists(path):
        return None
    try:
        result = subprocess.run(
            probe_stream_args(os.fspath(path)),
            capture_output=True,
            text=True,
            check=True,
            timeout=10.0,
        )
    except (OSError, subprocess.SubprocessError) as exc:
        LOG.warning("ffprobe failed for %s: %s", path, exc)
        return None
    return parse_probe_output(result.stdout or "")


def parse_probe_output(text: str) -> AudioInfo | None:
    values: dict[str, str] = {}
    for line in text.splitlines():
        key, sep, value = line.strip().partition("=")
        if sep:
            values[key] = value
    try:
        sample_rate = int(values["sample_rate"])
    except (KeyError, ValueError):
        return None
    if sample_rate <= 0:
        return None

    samples: int | None = None
    # duration_ts counts samples only when the stream time base is 1/sample_rate
    # (Ogg, FLAC). Matroska uses milliseconds or reports N/A.
    if values.get("time_base") == f"1/{sample_rate}":
        try:
            samples = int(values.get("duration_ts", ""))
        except ValueError:
            samples = None
    if samples is None:
        try:
            samples = int(round(float(values["duration"]) * sample_rate))
        except (KeyError, ValueError):
            return None
    if samples < 0:
        return None
    return AudioInfo(sample_rate=sample_rate, samples=samples)
