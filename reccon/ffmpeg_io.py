"""Shared helpers for building ffmpeg/ffprobe command lines."""

from __future__ import annotations

DEFAULT_THREAD_QUEUE_SIZE = 8192
DEFAULT_SAMPLE_FORMAT = "s16le"

CONTAINER_EXTENSIONS = {
    "opus": ".opus",
    "webm": ".webm",
    "flac": ".flac",
}

CONTENT_TYPES = {
    "opus": "audio/ogg",
    "webm": "audio/webm",
    "flac": "audio/flac",
}

_CODECS = {
    "opus": "libopus",
    "webm": "libopus",
    "flac": "flac",
}


def pcm_pipe_input_args(
    sample_rate: int,
    channels: int,
    *,
    queue_size: int = DEFAULT_THREAD_QUEUE_SIZE,
    sample_format: str = DEFAULT_SAMPLE_FORMAT,
) -> list[str]:
    """Return input arguments for piping PCM chunks into ffmpeg.

    ffmpeg treats options appearing before ``-i`` as applying to that input, so
    ``-thread_queue_size`` has to precede the input it targets.
    """

    return [
        "-f",
        sample_format,
        "-ar",
        str(sample_rate),
        "-ac",
        str(channels),
        "-thread_queue_size",
        str(queue_size),
        "-i",
        "pipe:0",
    ]


def encode_output_args(container_format: str, bitrate: str) -> list[str]:
    codec = _CODECS.get(container_format, "libopus")
    args = ["-c:a", codec]
    if codec == "libopus":
        args.extend(
            [
                "-b:a",
                bitrate,
                "-vbr",
                "on",
                "-application",
                "audio",
                "-frame_duration",
                "20",
            ]
        )
    args.extend(["-f", container_format])
    return args


def probe_stream_args(path: str) -> list[str]:
    """ffprobe invocation printing the first audio stream's rate, timing and the container duration."""
    return [
        "ffprobe",
        "-v",
        "error",
        "-select_streams",
        "a:0",
        "-show_entries",
        "stream=sample_rate,time_base,duration_ts:format=duration",
        "-of",
        "default=noprint_wrappers=1",
        path,
    ]
