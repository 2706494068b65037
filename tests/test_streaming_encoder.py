import sys
import time
from pathlib import Path

from reccon.encoder import AudioInfo, StreamingEncoder, parse_probe_output
from reccon.ffmpeg_io import DEFAULT_THREAD_QUEUE_SIZE, probe_stream_args


def _copy_stdin_command(dest: Path) -> list[str]:
    return [
        sys.executable,
        "-c",
        (
            "import pathlib, sys; "
            "dest = pathlib.Path(sys.argv[1]); "
            "data = sys.stdin.buffer.read(); "
            "dest.write_bytes(data)"
        ),
        str(dest),
    ]


def test_streaming_encoder_writes_chunks(tmp_path: Path):
    partial_path = tmp_path / "seg.partial.opus"
    encoder = StreamingEncoder(str(partial_path))
    encoder.start(command=_copy_stdin_command(partial_path))

    assert encoder.feed(b"abc") is True
    assert encoder.feed(bytearray(b"123")) is True

    result = encoder.close(timeout=2.0)
    assert result.success
    assert result.partial_path == str(partial_path)
    assert result.bytes_sent == 6
    assert result.dropped_chunks == 0
    assert partial_path.read_bytes() == b"abc123"


def test_streaming_encoder_replaces_stale_file(tmp_path: Path):
    partial_path = tmp_path / "seg.partial.opus"
    partial_path.write_bytes(b"stale")
    encoder = StreamingEncoder(str(partial_path))
    encoder.start(command=_copy_stdin_command(partial_path))
    encoder.feed(b"fresh")
    result = encoder.close(timeout=2.0)
    assert result.success
    assert partial_path.read_bytes() == b"fresh"


def test_streaming_encoder_creates_missing_directory(tmp_path: Path):
    partial_path = tmp_path / "nested" / "dir" / "seg.partial.opus"
    encoder = StreamingEncoder(str(partial_path))
    encoder.start(command=_copy_stdin_command(partial_path))
    encoder.feed(b"x" * 10)
    assert encoder.close(timeout=2.0).success
    assert partial_path.read_bytes() == b"x" * 10


def test_feed_before_start_is_dropped(tmp_path: Path):
    encoder = StreamingEncoder(str(tmp_path / "seg.partial.opus"))
    assert encoder.feed(b"abc") is False

    result = encoder.close(timeout=1.0)
    assert not result.success
    assert result.returncode is None


def test_feed_after_encoder_exit_returns_false(tmp_path: Path):
    encoder = StreamingEncoder(str(tmp_path / "seg.partial.opus"))
    encoder.start(command=[sys.executable, "-c", "import sys; sys.exit(3)"])

    deadline = time.monotonic() + 5.0
    while not encoder.failed and time.monotonic() < deadline:
        time.sleep(0.05)

    assert encoder.feed(b"late") is False
    result = encoder.close(timeout=2.0)
    assert not result.success
    assert result.returncode == 3
    assert result.dropped_chunks == 1


def test_feed_blocks_until_encoder_drains(tmp_path: Path):
    partial_path = tmp_path / "seg.partial.opus"
    encoder = StreamingEncoder(str(partial_path), queue_chunks=1)
    command = [
        sys.executable,
        "-c",
        (
            "import pathlib, sys, time; "
            "time.sleep(0.5); "
            "pathlib.Path(sys.argv[1]).write_bytes(sys.stdin.buffer.read())"
        ),
        str(partial_path),
    ]
    encoder.start(command=command)

    payloads = [bytes([i]) * 200_000 for i in range(4)]
    assert [encoder.feed(p) for p in payloads] == [True] * 4

    result = encoder.close(timeout=5.0)
    assert result.success
    assert result.dropped_chunks == 0
    assert partial_path.read_bytes() == b"".join(payloads)


def test_feed_times_out_when_encoder_stops_reading(tmp_path: Path):
    encoder = StreamingEncoder(str(tmp_path / "seg.partial.opus"), queue_chunks=1)
    encoder.start(command=[sys.executable, "-c", "import time; time.sleep(30)"])

    payload = b"\x00" * 200_000
    outcomes = []
    blocked_for = 0.0
    for _ in range(4):
        started = time.monotonic()
        accepted = encoder.feed(payload, timeout=0.3)
        if not accepted:
            blocked_for = time.monotonic() - started
        outcomes.append(accepted)

    assert outcomes[0] is True
    assert False in outcomes
    assert blocked_for >= 0.25

    result = encoder.close(timeout=1.0)
    assert result.dropped_chunks >= outcomes.count(False)
    assert not result.success


def test_nonzero_exit_reports_stderr(tmp_path: Path):
    encoder = StreamingEncoder(str(tmp_path / "seg.partial.opus"))
    encoder.start(
        command=[
            sys.executable,
            "-c",
            "import sys; sys.stdin.buffer.read(); sys.stderr.write('bad codec'); sys.exit(1)",
        ]
    )
    encoder.feed(b"pcm")
    result = encoder.close(timeout=2.0)
    assert not result.success
    assert result.returncode == 1
    assert "bad codec" in (result.stderr or "")


def test_streaming_encoder_thread_queue_size_precedes_input(tmp_path: Path):
    encoder = StreamingEncoder(str(tmp_path / "seg.partial.opus"))

    cmd = encoder._build_command()

    queue_idx = cmd.index("-thread_queue_size")
    input_idx = cmd.index("-i")

    assert queue_idx < input_idx
    assert cmd[queue_idx + 1] == str(DEFAULT_THREAD_QUEUE_SIZE)
    assert cmd[input_idx + 1] == "pipe:0"


def test_build_command_uses_mono_pcm_and_container(tmp_path: Path):
    target = str(tmp_path / "seg.partial.webm")
    encoder = StreamingEncoder(target, sample_rate=16000, container_format="webm", bitrate="32k")

    cmd = encoder._build_command()

    assert cmd[0] == "ffmpeg"
    assert cmd[cmd.index("-ar") + 1] == "16000"
    assert cmd[cmd.index("-ac") + 1] == "1"
    assert cmd[cmd.index("-b:a") + 1] == "32k"
    assert cmd[-3:] == ["-f", "webm", target]


def test_flac_output_has_no_bitrate(tmp_path: Path):
    target = str(tmp_path / "seg.partial.flac")
    cmd = StreamingEncoder(target, container_format="flac")._build_command()

    assert "-b:a" not in cmd
    assert cmd[cmd.index("-c:a") + 1] == "flac"
    assert cmd[-3:] == ["-f", "flac", target]


def test_parse_probe_output_ogg_counts_duration_ts():
    text = "sample_rate=48000\ntime_base=1/48000\nduration_ts=96000\nduration=2.000000\n"
    assert parse_probe_output(text) == AudioInfo(sample_rate=48000, samples=96000)


def test_parse_probe_output_webm_uses_container_duration():
    text = "sample_rate=48000\ntime_base=1/1000\nduration_ts=N/A\nduration=1.500000\n"
    assert parse_probe_output(text) == AudioInfo(sample_rate=48000, samples=72000)


def test_parse_probe_output_ignores_millisecond_duration_ts():
    text = "sample_rate=16000\ntime_base=1/1000\nduration_ts=2500\nduration=2.500000\n"
    assert parse_probe_output(text) == AudioInfo(sample_rate=16000, samples=40000)


def test_parse_probe_output_rejects_missing_fields():
    assert parse_probe_output("sample_rate=48000\n") is None
    assert parse_probe_output("sample_rate=48000\nduration_ts=N/A\nduration=N/A\n") is None
    assert parse_probe_output("sample_rate=N/A\nduration=1.0\n") is None
    assert parse_probe_output("") is None


def test_probe_command_requests_container_duration():
    cmd = probe_stream_args("seg.webm")
    entries = cmd[cmd.index("-show_entries") + 1]
    assert "stream=sample_rate,time_base,duration_ts" in entries
    assert "format=duration" in entries
    assert cmd[-1] == "seg.webm"
