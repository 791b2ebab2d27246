from barkwatch.ffmpeg_io import decode_command, wav_pipe_output_args


def test_wav_output_args_are_bitexact_mono_pcm():
    args = wav_pipe_output_args(16000)
    assert args[args.index("-ar") + 1] == "16000"
    assert args[args.index("-ac") + 1] == "1"
    assert args[args.index("-acodec") + 1] == "pcm_s16le"
    assert args[args.index("-f") + 1] == "wav"
    assert args[-1] == "pipe:1"
    assert "+bitexact" in args
    assert args[args.index("-map_metadata") + 1] == "-1"


def test_file_decode_command():
    cmd = decode_command("/tmp/bark.mp4", 16000, ffmpeg_path="ffmpeg")
    assert cmd[:2] == ["ffmpeg", "-hide_banner"]
    assert cmd[cmd.index("-i") + 1] == "/tmp/bark.mp4"
    assert "-rtsp_transport" not in cmd
    assert "nobuffer" not in cmd


def test_live_rtsp_command_uses_tcp():
    cmd = decode_command("RTSP://cam.local/stream", 8000, live=True)
    assert cmd[cmd.index("-rtsp_transport") + 1] == "tcp"
    assert cmd.index("-rtsp_transport") < cmd.index("-i")
    assert "nobuffer" in cmd


def test_live_http_command_skips_rtsp_flags():
    cmd = decode_command("http://radio.local/live", 8000, live=True)
    assert "-rtsp_transport" not in cmd
    assert cmd[cmd.index("-ar") + 1] == "8000"
