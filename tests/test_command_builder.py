"""Tests for ffmpeg argument construction."""

from pathlib import Path

import pytest

from encodelab.command_builder import (
    build,
    build_encode_command,
    build_trial_command,
    calculate_target_bitrate,
    command_as_string,
    estimate_file_size,
    parse_bitrate,
)
from encodelab.errors import InvalidRequestError
from encodelab.models import AccelerationChoice, EncodeRequest, HdrInfo, ProbeResult, StreamInfo

SRC = Path("/media/in.mov")
DST = Path("/media/out.mp4")


def request(**overrides) -> EncodeRequest:
    fields = {"source": SRC, "destination": DST, "codec": "h264"}
    fields.update(overrides)
    return EncodeRequest(**fields)


def value_after(args: list[str], flag: str) -> str:
    return args[args.index(flag) + 1]


class TestQualityFlags:

    @pytest.mark.parametrize("overrides", [
        {},
        {"crf": 20},
        {"bitrate": "2500k"},
        {"target_size_bytes": 10_000_000, "duration": 100.0},
        {"crf": 20, "bitrate": "1M"},
        {"crf": 20, "target_size_bytes": 10_000_000, "duration": 100.0},
        {"preset_id": "hls-high", "codec": ""},
        {"preset_id": "hls-high", "codec": "", "crf": 21},
        {"codec": "h265", "acceleration": AccelerationChoice.NVIDIA},
        {"codec": "vp9", "acceleration": AccelerationChoice.APPLE},
    ])
    def test_exactly_one_video_quality_flag(self, overrides) -> None:
        args = build(request(**overrides))
        assert ("-crf" in args) != ("-b:v" in args)

    def test_target_size_beats_bitrate_and_crf(self) -> None:
        args = build(request(crf=18, bitrate="5M", target_size_bytes=10_000_000, duration=100.0))
        assert value_after(args, "-b:v") == "608k"
        assert "-crf" not in args

    def test_bitrate_beats_crf(self) -> None:
        args = build(request(crf=18, bitrate="5M"))
        assert value_after(args, "-b:v") == "5M"
        assert "-crf" not in args

    def test_codec_default_crf(self) -> None:
        assert value_after(build(request()), "-crf") == "23"
        assert value_after(build(request(codec="h265")), "-crf") == "28"

    def test_request_crf_overrides_preset_bitrate(self) -> None:
        args = build(request(codec="", preset_id="hls-low", crf=26))
        assert value_after(args, "-crf") == "26"
        assert "-b:v" not in args

    def test_target_size_uses_source_duration(self) -> None:
        info = ProbeResult(path=SRC, duration_seconds=100.0)
        args = build(request(target_size_bytes=10_000_000), source_info=info)
        assert value_after(args, "-b:v") == "608k"

    def test_target_size_without_duration_is_rejected(self) -> None:
        with pytest.raises(InvalidRequestError, match="duration"):
            build(request(target_size_bytes=10_000_000))


class TestTargetBitrate:

    def test_reference_values(self) -> None:
        """(80,000,000 - 19,200,000) / 100 / 1000 = 608 kbps."""
        assert calculate_target_bitrate(10_000_000, 100.0, 192) == 608

    def test_floors(self) -> None:
        assert calculate_target_bitrate(10_000_001, 100.0, 192) == 608

    def test_minimum_50_kbps(self) -> None:
        assert calculate_target_bitrate(1_000, 100.0, 192) == 50

    @pytest.mark.parametrize("target, duration", [(0, 10.0), (-5, 10.0), (1000, 0.0)])
    def test_rejects_nonpositive(self, target, duration) -> None:
        with pytest.raises(InvalidRequestError):
            calculate_target_bitrate(target, duration)

    def test_muted_output_spends_everything_on_video(self) -> None:
        args = build(request(target_size_bytes=10_000_000, duration=100.0, audio_codec="none"))
        assert value_after(args, "-b:v") == "800k"
        assert "-an" in args


class TestAcceleration:

    def test_mapped_pair_uses_hardware_encoder(self) -> None:
        command = build_encode_command(request(codec="h265", acceleration=AccelerationChoice.NVIDIA))
        assert value_after(command.args, "-c:v") == "hevc_nvenc"
        assert not command.downgraded

    def test_unmapped_pair_downgrades_with_notice(self, caplog) -> None:
        command = build_encode_command(request(codec="vp9", acceleration=AccelerationChoice.APPLE))

        assert value_after(command.args, "-c:v") == "libvpx-vp9"
        assert command.downgraded
        notice = next(n for n in command.notices if n.kind == "downgraded_to_software")
        assert notice.detail["acceleration"] == "apple"
        assert "using software encoder" in caplog.text

    def test_crf_on_hardware_encoder_is_a_notice_not_an_error(self) -> None:
        command = build_encode_command(request(acceleration=AccelerationChoice.INTEL, crf=22))
        assert value_after(command.args, "-c:v") == "h264_qsv"
        assert any(n.kind == "ignored_option" for n in command.notices)

    def test_hardware_decode_adds_hwaccel_before_input(self) -> None:
        args = build(request(acceleration=AccelerationChoice.NVIDIA, hardware_decode=True))
        assert args.index("-hwaccel") < args.index("-i")
        assert value_after(args, "-hwaccel") == "cuda"

    def test_software_only_flags_skipped_for_hardware(self) -> None:
        args = build(request(acceleration=AccelerationChoice.NVIDIA, encoder_speed="slow"))
        assert "-preset" not in args
        assert "-pix_fmt" not in args


class TestLayers:

    def test_preset_supplies_codec_and_speed(self) -> None:
        args = build(request(codec="", preset_id="high-quality"))
        assert value_after(args, "-c:v") == "libx264"
        assert value_after(args, "-preset") == "slow"
        assert value_after(args, "-crf") == "18"
        assert value_after(args, "-b:a") == "256k"

    def test_unknown_preset_with_codec_falls_back(self) -> None:
        command = build_encode_command(request(preset_id="nope"))
        assert [n.kind for n in command.notices] == ["unknown_preset"]

    def test_unknown_preset_without_codec_is_rejected(self) -> None:
        with pytest.raises(InvalidRequestError, match="Unknown preset"):
            build(request(codec="", preset_id="nope"))

    def test_no_codec_at_all_is_rejected(self) -> None:
        with pytest.raises(InvalidRequestError):
            build(request(codec=""))

    def test_hevc_in_mp4_gets_hvc1_tag(self) -> None:
        args = build(request(codec="h265"))
        assert value_after(args, "-tag:v") == "hvc1"
        assert value_after(args, "-movflags") == "+faststart"

    def test_hls_container_flags(self) -> None:
        args = build(request(codec="", preset_id="hls-standard", destination=Path("/out/index.m3u8")))
        assert value_after(args, "-f") == "hls"
        assert value_after(args, "-hls_time") == "6"

    def test_extra_args_go_right_before_output(self) -> None:
        args = build(request(extra_args=("-map_metadata", "-1")))
        assert args[-4:] == ["-map_metadata", "-1", "-y", str(DST)]

    def test_structure(self) -> None:
        args = build(request())
        assert args[:3] == ["-hide_banner", "-i", str(SRC)]
        assert args[-2:] == ["-y", str(DST)]


class TestValidation:

    @pytest.mark.parametrize("overrides", [
        {"crf": 64},
        {"crf": -1},
        {"framerate": 0},
        {"bitrate": "fast"},
        {"resolution": "huge"},
    ])
    def test_rejected(self, overrides) -> None:
        with pytest.raises(InvalidRequestError):
            build(request(**overrides))


class TestScaling:

    def test_shorthand_keeps_aspect(self) -> None:
        assert value_after(build(request(resolution="720p")), "-vf") == "scale=-2:720"

    def test_explicit(self) -> None:
        assert value_after(build(request(resolution="1280x720")), "-vf") == "scale=1280:720"

    def test_no_upscale_beyond_source(self) -> None:
        info = ProbeResult(
            path=SRC, duration_seconds=10.0,
            streams=(StreamInfo(index=0, kind="video", width=1280, height=720),),
        )
        command = build_encode_command(request(resolution="1080p"), source_info=info)
        assert "-vf" not in command.args
        assert any(n.detail.get("option") == "resolution" for n in command.notices)


def source(hdr: HdrInfo | None = None, height: int = 2160) -> ProbeResult:
    video = StreamInfo(index=0, kind="video", width=3840, height=height, hdr=hdr)
    return ProbeResult(path=SRC, duration_seconds=60.0, streams=(video,))


HDR10 = HdrInfo(is_hdr=True, kind="HDR10", color_transfer="smpte2084",
                color_primaries="bt2020", color_space="bt2020nc", bit_depth=10)


class TestHdr:

    def test_hevc_keeps_ten_bit_and_colour_tags(self) -> None:
        command = build_encode_command(request(codec="h265"), source_info=source(HDR10))
        args = command.args

        assert args.count("-pix_fmt") == 1
        assert value_after(args, "-pix_fmt") == "yuv420p10le"
        assert value_after(args, "-color_primaries") == "bt2020"
        assert value_after(args, "-color_trc") == "smpte2084"
        assert value_after(args, "-colorspace") == "bt2020nc"
        assert value_after(args, "-profile:v") == "main10"
        assert "transfer=smpte2084" in value_after(args, "-x265-params")
        assert command.notices == ()

    def test_twelve_bit_source_on_av1(self) -> None:
        twelve = HdrInfo(is_hdr=True, kind="HLG", color_transfer="arib-std-b67", bit_depth=12)
        args = build(request(codec="av1", destination=Path("/out/a.mkv")), source_info=source(twelve))

        assert value_after(args, "-pix_fmt") == "yuv420p12le"
        assert value_after(args, "-color_trc") == "arib-std-b67"
        assert value_after(args, "-color_primaries") == "bt2020"
        assert "-x265-params" not in args

    def test_hardware_hevc_gets_p010(self) -> None:
        args = build(request(codec="h265", acceleration=AccelerationChoice.NVIDIA), source_info=source(HDR10))
        assert value_after(args, "-c:v") == "hevc_nvenc"
        assert value_after(args, "-pix_fmt") == "p010le"
        assert value_after(args, "-color_trc") == "smpte2084"

    def test_eight_bit_encoder_downgrades_with_notice(self, caplog) -> None:
        command = build_encode_command(request(codec="h264"), source_info=source(HDR10))

        assert value_after(command.args, "-pix_fmt") == "yuv420p"
        assert "-color_trc" not in command.args
        assert [n.kind for n in command.notices] == ["hdr_downgraded"]
        assert "HDR10" in caplog.text

    def test_tone_map_to_sdr(self) -> None:
        command = build_encode_command(
            request(codec="h264", tone_map=True, resolution="1080p"), source_info=source(HDR10),
        )
        args = command.args

        vf = value_after(args, "-vf")
        assert vf.startswith("scale=-2:1080,zscale=t=linear")
        assert "tonemap=tonemap=hable" in vf
        assert value_after(args, "-pix_fmt") == "yuv420p"
        assert value_after(args, "-color_trc") == "bt709"
        assert command.notices == ()

    def test_tone_map_on_sdr_source_is_ignored(self) -> None:
        command = build_encode_command(request(codec="h265", tone_map=True), source_info=source(HdrInfo()))
        assert "-vf" not in command.args
        assert value_after(command.args, "-pix_fmt") == "yuv420p"
        assert any(n.detail.get("option") == "tone_map" for n in command.notices)

    def test_dynamic_metadata_dropped_notice(self) -> None:
        dolby = HdrInfo(is_hdr=True, kind="Dolby Vision", color_transfer="smpte2084", bit_depth=10)
        command = build_encode_command(request(codec="h265"), source_info=source(dolby))
        assert value_after(command.args, "-pix_fmt") == "yuv420p10le"
        assert [n.kind for n in command.notices] == ["hdr_metadata_dropped"]

    def test_sdr_source_unchanged(self) -> None:
        with_info = build(request(codec="h265"), source_info=source(HdrInfo()))
        assert with_info == build(request(codec="h265"))


class TestAudioAndImage:

    def test_audio_codec_drops_video(self) -> None:
        command = build_encode_command(request(codec="mp3", destination=Path("/out/a.mp3")))
        assert "-vn" in command.args
        assert value_after(command.args, "-c:a") == "libmp3lame"
        assert value_after(command.args, "-b:a") == "320k"

    def test_flac_has_no_bitrate(self) -> None:
        args = build(request(codec="flac", destination=Path("/out/a.flac")))
        assert "-b:a" not in args

    def test_crf_on_audio_is_ignored_with_notice(self) -> None:
        command = build_encode_command(request(codec="aac", crf=20))
        assert "-crf" not in command.args
        assert any(n.kind == "ignored_option" for n in command.notices)

    def test_webp_quality(self) -> None:
        args = build(request(codec="", preset_id="image-optimization", destination=Path("/out/a.webp")))
        assert value_after(args, "-frames:v") == "1"
        assert value_after(args, "-quality") == "85"


class TestHelpers:

    def test_trial_command_is_video_only_with_frame_cap(self) -> None:
        command = build_trial_command("h264", AccelerationChoice.NONE, Path("in.mkv"), Path("out.mkv"), frames=2)
        assert "-an" in command.args
        assert value_after(command.args, "-frames:v") == "2"
        assert command.encoder == "libx264"

    def test_command_as_string_quotes(self) -> None:
        text = command_as_string("ffmpeg", ["-i", "my clip.mov"])
        assert text == "ffmpeg -i 'my clip.mov'"

    @pytest.mark.parametrize("text, kbps", [("5M", 5000.0), ("2500k", 2500.0), ("128", 128.0), ("1.5M", 1500.0)])
    def test_parse_bitrate(self, text, kbps) -> None:
        assert parse_bitrate(text) == kbps

    def test_estimate_file_size(self) -> None:
        # (808 kbps * 1000 * 100 s) / 8 bits / MiB
        assert estimate_file_size(616, 192, 100) == pytest.approx(9.632, rel=1e-3)
