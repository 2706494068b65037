"""Capture loop driven end to end with in-memory chunks and a fake encoder."""
from __future__ import annotations

import sys
from pathlib import Path

from reccon import config as config_module
from reccon import daemon
from reccon.daemon import run_pipeline
from reccon.encoder import EncoderResult
from reccon.recorder import SegmentRecorder
from reccon.segmentation import Segmentation, SegmentationConfig
from reccon.source import ChunkSource

QUIET = bytes([0x01, 0x00, 0x01, 0x00])
HOT = bytes([0xCC, 0xCC, 0xCC, 0xCC])


class FileEncoder:
    def __init__(self, partial_path: str) -> None:
        self.partial_path = partial_path
        self.buf = bytearray()

    def start(self) -> None:
        pass

    def feed(self, chunk: bytes, timeout=None) -> bool:
        self.buf.extend(chunk)
        return True

    def close(self, *, timeout=None) -> EncoderResult:
        Path(self.partial_path).write_bytes(bytes(self.buf))
        return EncoderResult(self.partial_path, True, 0, None, None, len(self.buf), 0)


def _engine(**overrides) -> Segmentation:
    values = dict(chunk_size=4, max_total_chunks=10, min_hot_chunks=2, max_quiet_chunks=3, threshold=0x0100)
    values.update(overrides)
    return Segmentation(SegmentationConfig(**values))


def _ids():
    counter = iter(range(1000))
    return lambda: f"seg{next(counter):04d}"


def test_pipeline_records_burst_with_preroll_and_tail(tmp_path: Path):
    recorder = SegmentRecorder(tmp_path, encoder_factory=FileEncoder)
    chunks = [QUIET, QUIET, HOT, HOT, HOT, QUIET, QUIET, QUIET, QUIET, b""]

    stats = run_pipeline(chunks, _engine(), recorder, _ids())
    assert recorder.close(timeout=5.0)

    assert stats.chunks == 10
    assert stats.bytes_in == 36
    assert stats.segments_started == 1
    assert stats.segments_ended == 1
    assert (tmp_path / "seg0000.opus").read_bytes() == QUIET + HOT * 3 + QUIET * 3


def test_pipeline_closes_segment_at_end_of_stream(tmp_path: Path):
    recorder = SegmentRecorder(tmp_path, encoder_factory=FileEncoder)
    chunks = [HOT, HOT, HOT, HOT[:2], b""]

    stats = run_pipeline(chunks, _engine(), recorder, _ids())
    assert recorder.close(timeout=5.0)

    assert stats.segments_ended == 1
    assert (tmp_path / "seg0000.opus").read_bytes() == HOT * 3 + HOT[:2]


def test_pipeline_splits_long_activity_at_cap(tmp_path: Path):
    recorder = SegmentRecorder(tmp_path, encoder_factory=FileEncoder)
    chunks = [HOT] * 25 + [b""]

    stats = run_pipeline(chunks, _engine(max_total_chunks=10), recorder, _ids())
    assert recorder.close(timeout=5.0)

    assert stats.segments_started == 3
    assert stats.segments_ended == 3
    assert (tmp_path / "seg0000.opus").read_bytes() == HOT * 10
    # Later segments reuse the final chunk of the previous one as pre-roll.
    assert (tmp_path / "seg0001.opus").read_bytes() == HOT * 10
    assert (tmp_path / "seg0002.opus").read_bytes() == HOT * 7


def test_pipeline_stops_after_empty_chunk(tmp_path: Path):
    recorder = SegmentRecorder(tmp_path, encoder_factory=FileEncoder)
    chunks = [QUIET, b"", HOT, HOT, HOT]

    stats = run_pipeline(chunks, _engine(), recorder, _ids())
    assert recorder.close(timeout=5.0)

    assert stats.chunks == 2
    assert stats.segments_started == 0
    assert list(tmp_path.iterdir()) == []


def test_pipeline_over_capture_process(tmp_path: Path):
    script = (
        "import sys\n"
        "quiet = bytes([1, 0, 1, 0])\n"
        "hot = bytes([0xCC, 0xCC, 0xCC, 0xCC])\n"
        "sys.stdout.buffer.write(quiet * 2 + hot * 4 + quiet * 3 + hot[:2])\n"
    )
    source = ChunkSource([sys.executable, "-c", script], 4)
    recorder = SegmentRecorder(tmp_path, encoder_factory=FileEncoder)
    try:
        stats = run_pipeline(source.chunks(), _engine(), recorder, _ids())
    finally:
        source.close()
    assert recorder.close(timeout=5.0)

    assert stats.segments_ended == 1
    assert (tmp_path / "seg0000.opus").read_bytes() == QUIET + HOT * 4 + bytes([1, 0, 1, 0]) * 3


def test_main_rejects_bad_bucket(monkeypatch, tmp_path: Path):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(f"upload:\n  gcs_bucket: not-a-gcs-path\npaths:\n  storage_dir: {tmp_path}\n")
    monkeypatch.setenv("RECCON_CONFIG", str(config_path))
    monkeypatch.delenv("GCS_BUCKET", raising=False)
    monkeypatch.setattr(config_module, "_cfg_cache", None)

    assert daemon.main(["--config", str(config_path)]) == 2


def test_parser_accepts_overrides():
    args = daemon.build_parser().parse_args(
        ["--device", "hw:1", "--storage-dir", "/tmp/x", "--threshold", "0.1", "--log-level", "debug"]
    )
    assert args.device == "hw:1"
    assert args.storage_dir == "/tmp/x"
    assert args.threshold == 0.1
    assert args.log_level == "debug"
