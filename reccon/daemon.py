#!/usr/bin/env python3
"""
Recording daemon: capture -> segmentation -> per-segment encode/upload.

The loop pulls one chunk at a time from the capture source, passes it to the
segmentation engine and acts on every returned event before pulling the next
chunk. SIGINT/SIGTERM stop the capture process; the resulting end-of-stream
chunk closes any open segment, then the daemon waits for finalization.
"""
from __future__ import annotations

import argparse
import functools
import logging
import os
import signal
import sys
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from reccon import config as config_module
from reccon.encoder import StreamingEncoder
from reccon.gcs import GcsError, build_client
from reccon.recorder import SegmentRecorder, segment_id_factory
from reccon.segmentation import End, Segmentation, Start
from reccon.source import ChunkSource, arecord_command

LOG = logging.getLogger("reccon")


@dataclass
class PipelineStats:
    chunks: int = 0
    bytes_in: int = 0
    segments_started: int = 0
    segments_ended: int = 0


def run_pipeline(
    chunks: Iterable[bytes],
    engine: Segmentation,
    recorder: SegmentRecorder,
    gen_id: Callable[[], str],
) -> PipelineStats:
    """Drive ``engine`` over ``chunks`` until the terminating empty chunk."""
    stats = PipelineStats()
    for chunk in chunks:
        stats.chunks += 1
        stats.bytes_in += len(chunk)
        for event in engine.accept(chunk, gen_id):
            if isinstance(event, Start):
                stats.segments_started += 1
            elif isinstance(event, End):
                stats.segments_ended += 1
            recorder.handle(event)
        if not chunk:
            break
    return stats


def configure_logging(cfg: dict[str, Any], override: str | None = None) -> None:
    log_cfg = cfg.get("logging", {})
    level_name = override or ("DEBUG" if log_cfg.get("dev_mode") else str(log_cfg.get("level", "INFO")))
    logging.basicConfig(
        level=getattr(logging, level_name.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Record sustained audio activity into segments.")
    parser.add_argument("--config", help="Path to config.yaml (overrides RECCON_CONFIG)")
    parser.add_argument("--device", help="ALSA capture device")
    parser.add_argument("--storage-dir", help="Directory for finished segments")
    parser.add_argument("--threshold", type=float, help="Quiet threshold (fraction of full scale, or absolute level)")
    parser.add_argument("--log-level", help="Logging level (DEBUG, INFO, ...)")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    if args.config:
        os.environ["RECCON_CONFIG"] = args.config
    cfg = config_module.reload_cfg()
    if args.device:
        cfg["audio"]["device"] = args.device
    if args.storage_dir:
        cfg["paths"]["storage_dir"] = args.storage_dir
    if args.threshold is not None:
        cfg["segmenter"]["threshold"] = args.threshold
    configure_logging(cfg, args.log_level)

    seg_cfg = config_module.segmentation_config(cfg)
    LOG.info("starting with %r", seg_cfg)
    active = config_module.active_config_path()
    LOG.info("config file: %s", active if active else "(defaults)")

    try:
        uploader = build_client(cfg.get("upload"))
    except GcsError as exc:
        LOG.error("invalid upload configuration: %s", exc)
        return 2

    audio_cfg = cfg["audio"]
    enc_cfg = cfg.get("encoder", {})
    upload_cfg = cfg.get("upload", {})
    command = audio_cfg.get("record_command") or arecord_command(
        str(audio_cfg["device"]), int(audio_cfg["sample_rate"])
    )
    source = ChunkSource(command, seg_cfg.chunk_size)
    container_format = str(enc_cfg.get("container_format", "opus"))
    encoder_factory = functools.partial(
        StreamingEncoder,
        sample_rate=int(audio_cfg["sample_rate"]),
        container_format=container_format,
        bitrate=str(enc_cfg.get("bitrate", "48k")),
        queue_chunks=int(enc_cfg.get("queue_chunks", 64)),
    )
    recorder = SegmentRecorder(
        cfg["paths"]["storage_dir"],
        sample_rate=int(audio_cfg["sample_rate"]),
        container_format=container_format,
        encoder_factory=encoder_factory,
        uploader=uploader,
        close_timeout=float(enc_cfg.get("close_timeout_sec", 30.0)),
        delete_after_upload=bool(upload_cfg.get("delete_after_upload", False)),
    )
    engine = Segmentation(seg_cfg)

    def handle_signal(signum, frame):  # noqa
        LOG.info("received signal %s, shutting down...", signum)
        source.stop()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    try:
        source.start()
    except OSError as exc:
        LOG.error("failed to launch capture: %s", exc)
        return 1

    try:
        stats = run_pipeline(source.chunks(), engine, recorder, segment_id_factory())
    finally:
        source.close()
        outstanding = recorder.status.snapshot()
        if outstanding:
            LOG.info("waiting for %d segment(s) to finalize: %s", len(outstanding), ", ".join(outstanding))
        if not recorder.close(timeout=float(enc_cfg.get("close_timeout_sec", 30.0)) * 2):
            LOG.warning("gave up waiting for: %s", ", ".join(recorder.status.snapshot()))

    LOG.info(
        "capture ended after %d chunks; %d segment(s) recorded",
        stats.chunks,
        stats.segments_ended,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
