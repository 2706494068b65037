#!/usr/bin/env python3
"""
level_meter.py

A console tool to help choose the segmenter threshold for a new room.

Prints one line per captured chunk:

  <sigil>|<peak bar>|  peak=<level>

where the sigil is '<' when the level rises above the threshold, '|' while it
stays above, '>' when it falls back below, and ' ' while quiet.

Usage:
  ./level_meter.py
  ./level_meter.py --device "hw:CARD=Device,DEV=0" --threshold 0.1 --duration 30

Press Ctrl+C to stop.
"""
import argparse
import signal
import sys
import time

from reccon.config import get_cfg, threshold_level
from reccon.segmentation import INT16_MAX, peak_amplitude
from reccon.source import ChunkSource, arecord_command

BAR_WIDTH = 16


def level_sigil(on: bool, was_on: bool) -> str:
    if on and was_on:
        return "|"
    if on:
        return "<"
    if was_on:
        return ">"
    return " "


def level_bar(peak: int, width: int = BAR_WIDTH) -> str:
    filled = min(width, peak * width // (INT16_MAX + 1))
    return (":" * filled).ljust(width)


def build_parser(cfg: dict) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Live peak-level monitor to help choose the segmenter threshold.")
    parser.add_argument("--device", default=cfg["audio"]["device"], help="ALSA device (e.g., hw:CARD=Device,DEV=0)")
    parser.add_argument("--threshold", type=float, default=cfg["segmenter"]["threshold"], help="Threshold (fraction of full scale, or absolute level)")
    parser.add_argument("--chunk-bytes", type=int, default=int(cfg["audio"]["chunk_bytes"]), help="Bytes per displayed chunk (defaults to the segmenter chunk size)")
    parser.add_argument("--duration", type=float, default=0, help="Optional run duration seconds (0 = indefinite)")
    return parser


def main() -> int:
    cfg = get_cfg()
    args = build_parser(cfg).parse_args()

    threshold = threshold_level(args.threshold)
    sample_rate = int(cfg["audio"]["sample_rate"])
    print(f"== reccon level meter == device: {args.device}, threshold: {threshold}", flush=True)
    print("Press Ctrl+C to stop.\n", flush=True)

    source = ChunkSource(arecord_command(args.device, sample_rate), args.chunk_bytes)

    def on_signal(signum, frame):  # noqa
        print("\n[level_meter] received signal, shutting down...", flush=True)
        source.stop()

    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, on_signal)

    try:
        source.start()
    except OSError as exc:
        print(f"[level_meter] failed to start arecord: {exc!r}", file=sys.stderr, flush=True)
        return 2

    started = time.monotonic()
    was_on = False
    try:
        for chunk in source.chunks():
            if not chunk:
                break
            peak = peak_amplitude(chunk)
            on = peak > threshold
            print(f"{level_sigil(on, was_on)}|{level_bar(peak)}|  peak={peak:5d}", flush=True)
            was_on = on
            if args.duration and (time.monotonic() - started) >= args.duration:
                source.stop()
    finally:
        source.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
