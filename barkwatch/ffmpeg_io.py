"""Shared helpers for building ffmpeg decode command lines."""

from __future__ import annotations

DEFAULT_SAMPLE_FORMAT = "s16le"
DEFAULT_CODEC = "pcm_s16le"


def wav_pipe_output_args(
    sample_rate: int,
    *,
    channels: int = 1,
    codec: str = DEFAULT_CODEC,
) -> list[str]:
    """Return output arguments for a canonical WAV stream on stdout.

    The wav muxer adds a LIST/INFO chunk naming the encoder unless bitexact
    mode is on, which would push the data chunk past the 44-byte header the
    decoder skips. Metadata is dropped for the same reason.
    """

    return [
        "-vn",
        "-acodec",
        codec,
        "-ar",
        str(sample_rate),
        "-ac",
        str(channels),
        "-map_metadata",
        "-1",
        "-fflags",
        "+bitexact",
        "-flags:a",
        "+bitexact",
        "-f",
        "wav",
        "pipe:1",
    ]


def decode_command(
    source: str,
    sample_rate: int,
    *,
    ffmpeg_path: str = "ffmpeg",
    live: bool = False,
) -> list[str]:
    """Build the ffmpeg command that decodes ``source`` to mono WAV on stdout.

    ``live`` sources (RTSP/HTTP streams) use TCP transport for RTSP and
    reconnect-friendly low-latency input flags; files are read as fast as
    ffmpeg can decode them.
    """

    cmd = [ffmpeg_path, "-hide_banner", "-nostdin", "-loglevel", "error"]
    if live:
        if source.lower().startswith("rtsp://"):
            cmd.extend(["-rtsp_transport", "tcp"])
        cmd.extend(["-fflags", "nobuffer"])
    cmd.extend(["-i", source])
    cmd.extend(wav_pipe_output_args(sample_rate))
    return cmd
