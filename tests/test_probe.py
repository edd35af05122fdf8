"""ffprobe JSON parsing and HDR classification."""

from pathlib import Path

import pytest

from conftest import script
from encodelab import probe as probe_module
from encodelab.errors import EncodeFailureError
from encodelab.probe import detect_hdr, get_duration, parse_probe_output, probe

FFPROBE_JSON = {
    "format": {
        "format_name": "mov,mp4,m4a,3gp,3g2,mj2",
        "duration": "120.500000",
        "size": "31457280",
        "bit_rate": "2088000",
    },
    "streams": [
        {
            "index": 0, "codec_type": "video", "codec_name": "hevc",
            "width": 3840, "height": 2160, "r_frame_rate": "24000/1001",
            "bit_rate": "1900000", "color_transfer": "smpte2084",
            "color_primaries": "bt2020", "color_space": "bt2020nc",
            "bits_per_raw_sample": "10",
        },
        {
            "index": 1, "codec_type": "audio", "codec_name": "aac",
            "channels": 6, "sample_rate": "48000", "tags": {"language": "eng"},
        },
        {"index": 2, "codec_type": "data", "codec_name": "bin_data"},
    ],
}


def test_parse_probe_output() -> None:
    result = parse_probe_output(Path("movie.mp4"), FFPROBE_JSON)

    assert result.duration_seconds == pytest.approx(120.5)
    assert result.container.startswith("mov")
    assert result.size == 31457280
    assert len(result.streams) == 2

    video = result.video
    assert (video.width, video.height) == (3840, 2160)
    assert video.fps == pytest.approx(23.976, rel=1e-3)
    assert video.hdr.kind == "HDR10"
    assert video.hdr.bit_depth == 10

    audio = result.audio
    assert audio.channels == 6
    assert audio.language == "eng"
    assert audio.hdr is None


def test_images_have_no_duration() -> None:
    result = parse_probe_output(Path("still.PNG"), {"format": {"duration": "0.04", "bit_rate": "1"}})
    assert result.duration_seconds == 0.0
    assert result.bitrate == 0


def test_missing_fields_default_to_zero() -> None:
    result = parse_probe_output(Path("odd.mkv"), {"format": {"duration": "N/A"}, "streams": [
        {"index": 0, "codec_type": "video", "r_frame_rate": "0/0"},
    ]})
    assert result.duration_seconds == 0.0
    assert result.video.fps == 0.0


class TestHdr:

    def test_sdr(self) -> None:
        hdr = detect_hdr({"color_transfer": "bt709"})
        assert not hdr.is_hdr
        assert hdr.kind == "SDR"
        assert hdr.bit_depth == 8

    def test_hlg(self) -> None:
        assert detect_hdr({"color_transfer": "arib-std-b67"}).kind == "HLG"

    def test_dolby_vision(self) -> None:
        stream = {"color_transfer": "smpte2084",
                  "side_data_list": [{"side_data_type": "DOVI configuration record"}]}
        assert detect_hdr(stream).kind == "Dolby Vision"

    def test_hdr10_plus_wins(self) -> None:
        stream = {"color_transfer": "smpte2084", "side_data_list": [
            {"side_data_type": "DOVI configuration record"},
            {"side_data_type": "HDR10+ dynamic metadata"},
        ]}
        hdr = detect_hdr(stream)
        assert hdr.kind == "HDR10+"
        assert hdr.is_hdr

    @pytest.mark.parametrize("pix_fmt, depth", [
        ("yuv420p10le", 10), ("p010le", 10), ("yuv420p12le", 12), ("yuv420p", 8), (None, 8),
    ])
    def test_bit_depth_from_pixel_format(self, pix_fmt, depth) -> None:
        stream = {"color_transfer": "smpte2084", "pix_fmt": pix_fmt}
        assert detect_hdr(stream).bit_depth == depth


class TestProbeProcess:

    def test_missing_file(self, config, tmp_path) -> None:
        with pytest.raises(FileNotFoundError):
            probe(tmp_path / "nope.mp4", config)
        assert get_duration(tmp_path / "nope.mp4", config) == 0.0

    def test_reads_ffprobe_json(self, config, tmp_path, monkeypatch) -> None:
        media = tmp_path / "clip.mkv"
        media.write_bytes(b"\0")
        fake = script("""
            import json
            print(json.dumps({"format": {"duration": "7.25", "format_name": "matroska,webm"}, "streams": []}))
        """)
        monkeypatch.setattr(probe_module, "build_probe_command", lambda path: fake)

        assert get_duration(media, config) == pytest.approx(7.25)

    def test_nonzero_exit(self, config, tmp_path, monkeypatch) -> None:
        media = tmp_path / "clip.mkv"
        media.write_bytes(b"\0")
        monkeypatch.setattr(probe_module, "build_probe_command", lambda path: script("import sys; sys.exit(1)"))

        with pytest.raises(EncodeFailureError):
            probe(media, config)
        assert get_duration(media, config) == 0.0
