#!/usr/bin/env python3
"""Turns segmentation events into encoded files, finalized off the capture loop."""
from __future__ import annotations

import itertools
import logging
import os
import secrets
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from reccon.encoder import AudioInfo, EncoderResult, StreamingEncoder, probe_audio
from reccon.ffmpeg_io import CONTAINER_EXTENSIONS, CONTENT_TYPES
from reccon.segmentation import SAMPLE_RATE, SAMPLE_WIDTH, Data, End, Event, Start

LOG = logging.getLogger("recorder")

PARTIAL_SUFFIX = ".partial"


class Encoder(Protocol):
    def start(self) -> None: ...
    def feed(self, chunk: bytes, timeout: float | None = None) -> bool: ...
    def close(self, *, timeout: float | None = None) -> EncoderResult: ...


class Uploader(Protocol):
    def put(self, name: str, contents: bytes, content_type: str, metadata: dict[str, str]) -> None: ...


def segment_id_factory(clock: Callable[[], float] = time.time) -> Callable[[], str]:
    """Return a generator of ids like ``20240102T123456Z-3fa9-0001``.

    The hex tag is drawn once per factory; the counter restarts with the process.
    """
    counter = itertools.count(1)
    tag = secrets.token_hex(2)

    def _next_id() -> str:
        stamp = time.strftime("%Y%m%dT%H%M%SZ", time.gmtime(clock()))
        return f"{stamp}-{tag}-{next(counter):04d}"

    return _next_id


class FinalizeStatus:
    """Tracks segments whose finalization is still running."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._active: dict[str, float] = {}

    def begin(self, segment_id: str) -> None:
        with self._cond:
            self._active[segment_id] = time.time()

    def finish(self, segment_id: str) -> None:
        with self._cond:
            self._active.pop(segment_id, None)
            self._cond.notify_all()

    def snapshot(self) -> list[str]:
        with self._cond:
            return sorted(self._active, key=self._active.__getitem__)

    def wait_for_all(self, timeout: float | None = None) -> bool:
        """Wait until every finalization has finished."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while self._active:
                if deadline is None:
                    self._cond.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._cond.wait(remaining)
            return True


@dataclass
class _OpenSegment:
    id: str
    partial_path: Path
    final_path: Path
    encoder: Encoder | None
    stalled: bool = False


class SegmentRecorder:
    def __init__(
        self,
        storage_dir: str | os.PathLike[str],
        *,
        sample_rate: int = SAMPLE_RATE,
        container_format: str = "opus",
        encoder_factory: Callable[[str], Encoder] | None = None,
        uploader: Uploader | None = None,
        close_timeout: float = 30.0,
        delete_after_upload: bool = False,
        prober: Callable[[Path], AudioInfo | None] = probe_audio,
    ) -> None:
        self.storage_dir = Path(storage_dir)
        self.sample_rate = sample_rate
        self.container_format = container_format
        self.extension = CONTAINER_EXTENSIONS.get(container_format, ".opus")
        self.content_type = CONTENT_TYPES.get(container_format, "application/octet-stream")
        self._encoder_factory = encoder_factory or self._default_encoder
        self.uploader = uploader
        self.close_timeout = close_timeout
        self.delete_after_upload = delete_after_upload
        self._prober = prober
        self._current: _OpenSegment | None = None
        self.status = FinalizeStatus()

    def _default_encoder(self, partial_path: str) -> StreamingEncoder:
        return StreamingEncoder(
            partial_path,
            sample_rate=self.sample_rate,
            container_format=self.container_format,
        )

    @property
    def current_id(self) -> str | None:
        return self._current.id if self._current else None

    def handle(self, event: Event) -> None:
        if isinstance(event, Start):
            self._open(event.id)
        elif isinstance(event, Data):
            self._write(event.data)
        elif isinstance(event, End):
            self._end()
        else:
            raise TypeError(f"unknown segmentation event: {event!r}")

    def _open(self, segment_id: str) -> None:
        if self._current is not None:
            LOG.warning("segment %s started while %s still open; closing it", segment_id, self._current.id)
            self._end()
        partial_path = self.storage_dir / f"{segment_id}{PARTIAL_SUFFIX}{self.extension}"
        final_path = self.storage_dir / f"{segment_id}{self.extension}"
        encoder: Encoder | None = self._encoder_factory(str(partial_path))
        try:
            encoder.start()
        except (OSError, RuntimeError) as exc:
            LOG.error("failed to start encoder for %s: %s", segment_id, exc)
            encoder = None
        self._current = _OpenSegment(segment_id, partial_path, final_path, encoder)
        LOG.info("segment %s started", segment_id)

    def _write(self, data: bytes) -> None:
        segment = self._current
        if segment is None:
            LOG.warning("dropping %d bytes with no open segment", len(data))
            return
        if not data or segment.encoder is None or segment.stalled:
            return
        if not segment.encoder.feed(data, timeout=self.close_timeout):
            LOG.error("encoder for %s stopped accepting audio; dropping the rest of the segment", segment.id)
            segment.stalled = True

    def _end(self) -> None:
        segment = self._current
        if segment is None:
            LOG.warning("segment end with no open segment")
            return
        self._current = None
        self.status.begin(segment.id)
        worker = threading.Thread(
            target=self._finalize,
            args=(segment,),
            name=f"finalize-{segment.id}",
            daemon=True,
        )
        worker.start()

    def _finalize(self, segment: _OpenSegment) -> None:
        try:
            self._finalize_segment(segment)
        except Exception:  # noqa: BLE001 - log and continue
            LOG.exception("finalization of %s failed", segment.id)
        finally:
            self.status.finish(segment.id)

    def _finalize_segment(self, segment: _OpenSegment) -> None:
        if segment.encoder is None:
            LOG.warning("segment %s had no encoder; nothing to finalize", segment.id)
            return
        result = segment.encoder.close(timeout=self.close_timeout)
        if result.dropped_chunks:
            LOG.warning("segment %s dropped %d chunk(s)", segment.id, result.dropped_chunks)
        if not result.success:
            LOG.error(
                "encoder failed for %s (returncode=%s): %s",
                segment.id,
                result.returncode,
                (result.stderr or str(result.error or "")).strip(),
            )
            return
        try:
            os.replace(segment.partial_path, segment.final_path)
        except OSError as exc:
            LOG.error("failed to finalize %s: %s", segment.partial_path, exc)
            return
        LOG.info("segment %s saved to %s (%d bytes in)", segment.id, segment.final_path, result.bytes_sent)

        if self.uploader is None:
            return
        self._upload(segment, result)

    def _upload(self, segment: _OpenSegment, result: EncoderResult) -> None:
        info = self._prober(segment.final_path)
        if info is None:
            LOG.warning("could not read back %s; using the PCM fed to the encoder", segment.final_path)
            info = AudioInfo(sample_rate=self.sample_rate, samples=result.bytes_sent // SAMPLE_WIDTH)
        metadata = {"samples": str(info.samples), "sample_rate": str(info.sample_rate)}
        try:
            contents = segment.final_path.read_bytes()
        except OSError as exc:
            LOG.error("failed to read %s for upload: %s", segment.final_path, exc)
            return
        try:
            self.uploader.put(segment.final_path.name, contents, self.content_type, metadata)
        except Exception as exc:  # noqa: BLE001 - log and continue
            LOG.error("upload of %s failed: %s", segment.id, exc)
            return
        if self.delete_after_upload:
            try:
                segment.final_path.unlink()
            except OSError as exc:
                LOG.warning("failed to remove uploaded %s: %s", segment.final_path, exc)

    def close(self, timeout: float | None = None) -> bool:
        """End any open segment and wait for outstanding finalizations."""
        if self._current is not None:
            self._end()
        return self.status.wait_for_all(timeout)
