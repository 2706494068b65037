#!/usr/bin/env python3
"""
Chunk-level segmentation of a raw PCM stream.

Each call to ``Segmentation.accept`` classifies one chunk of mono 16-bit
little-endian PCM as quiet or hot by its peak amplitude and returns the
lifecycle events that chunk produced:

  Start(id)   a new segment opens; always followed by its pre-roll Data
  Data(bytes) raw PCM belonging to the open segment
  End()       the open segment is complete

The stream is terminated by a single empty chunk. The engine performs no I/O.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Union

import numpy as np

LOG = logging.getLogger("segmenter")

SAMPLE_RATE = 48000
SAMPLE_WIDTH = 2   # 16-bit
BYTES_PER_CHUNK = 16384

INT16_MAX = 2 ** 15 - 1
INT16_MIN = -2 ** 15


def duration_to_chunks(
    seconds: float,
    *,
    sample_rate: int = SAMPLE_RATE,
    chunk_size: int = BYTES_PER_CHUNK,
) -> int:
    """Whole number of chunks covered by ``seconds`` of mono PCM16 (rounded down)."""
    millis = int(round(seconds * 1000))
    return millis * sample_rate * SAMPLE_WIDTH // (1000 * chunk_size)


@dataclass(frozen=True)
class SegmentationConfig:
    chunk_size: int
    max_total_chunks: int
    min_hot_chunks: int
    max_quiet_chunks: int
    threshold: int

    def __post_init__(self) -> None:
        if self.chunk_size <= 0 or self.chunk_size % SAMPLE_WIDTH:
            raise ValueError("chunk_size must be a positive multiple of 2 bytes")
        for name in ("max_total_chunks", "min_hot_chunks", "max_quiet_chunks"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must not be negative")
        if not INT16_MIN <= self.threshold <= INT16_MAX:
            raise ValueError("threshold must fit in a signed 16-bit sample")


# ---------- events ----------


@dataclass(frozen=True)
class Start:
    id: str


@dataclass(frozen=True)
class Data:
    data: bytes


@dataclass(frozen=True)
class End:
    pass


Event = Union[Start, Data, End]


# ---------- state ----------


@dataclass
class Quiet:
    pass


@dataclass
class Pending:
    id: str
    total_chunks: int
    consecutive_hot_chunks: int = 0


@dataclass
class Active:
    total_chunks: int
    consecutive_quiet_chunks: int = 0


State = Union[Quiet, Pending, Active]


def peak_amplitude(raw_audio: bytes | bytearray | memoryview) -> int:
    """Return the maximum absolute sample value, or 0 for an empty buffer."""
    if not raw_audio:
        return 0
    samples = np.frombuffer(raw_audio, dtype="<i2")
    # Widen first so that -32768 maps to 32768 rather than wrapping.
    return int(np.abs(samples.astype(np.int32)).max())


def is_quiet(raw_audio: bytes | bytearray | memoryview, threshold: int) -> bool:
    max_sample = peak_amplitude(raw_audio)
    if LOG.isEnabledFor(logging.DEBUG):
        LOG.debug("Max sample: %d <=> %d", max_sample, threshold)
    return max_sample <= threshold


class Segmentation:
    """Quiet -> Pending -> Active state machine over fixed-size chunks.

    A burst of hot chunks becomes pending as soon as it is observed, seeded with
    the chunk that preceded it (the pre-roll). It is promoted to an active
    segment after ``min_hot_chunks`` consecutive hot chunks, or discarded if a
    quiet chunk arrives first. An active segment ends once it reaches
    ``max_total_chunks`` chunks, once ``max_quiet_chunks`` consecutive quiet
    chunks have been seen, or at end of stream (an empty chunk).

    After a segment is ended by the chunk cap the engine returns to ``Quiet``
    even when the input is still hot; the next segment needs a fresh pending
    phase.
    """

    def __init__(self, config: SegmentationConfig) -> None:
        self.config = config
        self._state: State = Quiet()
        self._last_chunk = bytearray()
        self._pending_buf = bytearray()

    def __repr__(self) -> str:
        return (
            f"Segmentation(config={self.config!r}, "
            f"last_chunk=[len = {len(self._last_chunk)}], state={self._state!r})"
        )

    @property
    def state(self) -> State:
        return self._state

    @property
    def pending_size(self) -> int:
        """Bytes currently buffered for a pending burst."""
        return len(self._pending_buf)

    def accept(
        self,
        chunk: bytes | bytearray | memoryview,
        gen_id: Callable[[], str],
    ) -> list[Event]:
        """Consume one chunk and return the events it produced, in order.

        ``gen_id`` is called at most once, when a new burst becomes pending.
        """
        if len(chunk) > self.config.chunk_size:
            raise ValueError(f"{len(chunk)} > {self.config.chunk_size}")

        events: list[Event] = []
        quiet = is_quiet(chunk, self.config.threshold)
        state = self._state

        # Move forward through Quiet -> Pending -> Active by zero or more steps.

        if isinstance(state, Quiet) and not quiet:
            LOG.debug("Mic is hot; segment is now pending")
            self._pending_buf[:] = self._last_chunk
            state = Pending(
                id=gen_id(),
                total_chunks=1 if self._last_chunk else 0,
            )

        # If pending, maybe discard this segment, or maybe promote it to active.
        if isinstance(state, Pending):
            if quiet:
                LOG.debug("Mic is quiet; pending segment discarded")
                self._pending_buf.clear()
                state = Quiet()
            else:
                state.consecutive_hot_chunks += 1
                if state.consecutive_hot_chunks >= self.config.min_hot_chunks:
                    LOG.debug("Segment %s is now active", state.id)
                    events.append(Start(state.id))
                    events.append(Data(bytes(self._pending_buf)))
                    self._pending_buf.clear()
                    state = Active(total_chunks=state.total_chunks)
                else:
                    self._pending_buf.extend(chunk)
                    state.total_chunks += 1

        # If active, emit this chunk and maybe terminate the segment.
        if isinstance(state, Active):
            state.total_chunks += 1
            events.append(Data(bytes(chunk)))

            if quiet:
                if state.consecutive_quiet_chunks == 0:
                    LOG.debug("Mic is quiet; segment is active")
                state.consecutive_quiet_chunks += 1
            else:
                if state.consecutive_quiet_chunks > 0:
                    LOG.debug("Mic is hot; segment is active")
                state.consecutive_quiet_chunks = 0

            reason = _end_reason(state, self.config, chunk)
            if reason is not None:
                LOG.debug("Segment ended (%s) after %d chunks", reason, state.total_chunks)
                events.append(End())
                self._pending_buf.clear()
                state = Quiet()

        self._state = state
        self._last_chunk[:] = chunk
        return events


def _end_reason(
    state: Active,
    config: SegmentationConfig,
    chunk: bytes | bytearray | memoryview,
) -> str | None:
    if state.total_chunks >= config.max_total_chunks:
        return "max_total_chunks"
    if state.consecutive_quiet_chunks >= config.max_quiet_chunks:
        return "max_quiet_chunks"
    if not chunk:
        return "end_of_stream"
    return None
