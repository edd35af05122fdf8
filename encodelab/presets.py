# encodelab/presets.py

from __future__ import annotations

from dataclasses import dataclass, field

from encodelab.models import AccelerationChoice, CodecKind


@dataclass(frozen=True)
class CodecConfig:
    """
    Structural defaults for one generic codec id.

    `defaults` is the lowest-precedence settings layer the command builder
    merges; preset settings and request overrides are layered on top.
    """
    name: str
    display_name: str
    kind: CodecKind
    software_encoder: str
    default_format: str
    default_crf: int | None = None
    supports_speed_preset: bool = False
    defaults: dict = field(default_factory=dict)


CODECS: dict[str, CodecConfig] = {c.name: c for c in (
    CodecConfig(
        name="h264",
        display_name="H.264",
        kind=CodecKind.VIDEO,
        software_encoder="libx264",
        default_format=".mp4",
        default_crf=23,
        supports_speed_preset=True,
        defaults={"pix_fmt": "yuv420p", "audio_codec": "aac", "audio_bitrate": "192k"},
    ),
    CodecConfig(
        name="h265",
        display_name="H.265 (HEVC)",
        kind=CodecKind.VIDEO,
        software_encoder="libx265",
        default_format=".mp4",
        default_crf=28,
        supports_speed_preset=True,
        defaults={"pix_fmt": "yuv420p", "tag": "hvc1", "audio_codec": "aac", "audio_bitrate": "192k"},
    ),
    CodecConfig(
        name="av1",
        display_name="AV1",
        kind=CodecKind.VIDEO,
        software_encoder="libaom-av1",
        default_format=".mkv",
        default_crf=30,
        defaults={"pix_fmt": "yuv420p", "cpu_used": 4, "audio_codec": "libopus", "audio_bitrate": "128k"},
    ),
    CodecConfig(
        name="vp9",
        display_name="VP9",
        kind=CodecKind.VIDEO,
        software_encoder="libvpx-vp9",
        default_format=".webm",
        default_crf=31,
        defaults={"pix_fmt": "yuv420p", "audio_codec": "libopus", "audio_bitrate": "128k"},
    ),
    CodecConfig(
        name="aac",
        display_name="AAC",
        kind=CodecKind.AUDIO,
        software_encoder="aac",
        default_format=".m4a",
        defaults={"audio_bitrate": "192k"},
    ),
    CodecConfig(
        name="opus",
        display_name="Opus",
        kind=CodecKind.AUDIO,
        software_encoder="libopus",
        default_format=".opus",
        defaults={"audio_bitrate": "128k"},
    ),
    CodecConfig(
        name="mp3",
        display_name="MP3",
        kind=CodecKind.AUDIO,
        software_encoder="libmp3lame",
        default_format=".mp3",
        defaults={"audio_bitrate": "320k"},
    ),
    CodecConfig(
        name="flac",
        display_name="FLAC",
        kind=CodecKind.AUDIO,
        software_encoder="flac",
        default_format=".flac",
    ),
    CodecConfig(
        name="webp",
        display_name="WebP",
        kind=CodecKind.IMAGE,
        software_encoder="libwebp",
        default_format=".webp",
        defaults={"image_quality": 85},
    ),
    CodecConfig(
        name="jpeg",
        display_name="JPEG",
        kind=CodecKind.IMAGE,
        software_encoder="mjpeg",
        default_format=".jpg",
        defaults={"image_quality": 3},
    ),
    CodecConfig(
        name="png",
        display_name="PNG",
        kind=CodecKind.IMAGE,
        software_encoder="png",
        default_format=".png",
    ),
)}

CODEC_ALIASES: dict[str, str] = {
    "hevc": "h265",
    "avc": "h264",
    "x264": "h264",
    "x265": "h265",
    "libx264": "h264",
    "libx265": "h265",
    "libaom-av1": "av1",
    "libvpx-vp9": "vp9",
    "libopus": "opus",
    "libmp3lame": "mp3",
    "jpg": "jpeg",
}


# Hardware encoder for each (generic codec, vendor) pair. Pairs not listed
# have no hardware encoder and fall back to software.
HARDWARE_ENCODERS: dict[tuple[str, AccelerationChoice], str] = {
    ("h264", AccelerationChoice.NVIDIA): "h264_nvenc",
    ("h265", AccelerationChoice.NVIDIA): "hevc_nvenc",
    ("av1",  AccelerationChoice.NVIDIA): "av1_nvenc",
    ("h264", AccelerationChoice.AMD):    "h264_amf",
    ("h265", AccelerationChoice.AMD):    "hevc_amf",
    ("av1",  AccelerationChoice.AMD):    "av1_amf",
    ("h264", AccelerationChoice.INTEL):  "h264_qsv",
    ("h265", AccelerationChoice.INTEL):  "hevc_qsv",
    ("av1",  AccelerationChoice.INTEL):  "av1_qsv",
    ("vp9",  AccelerationChoice.INTEL):  "vp9_qsv",
    ("h264", AccelerationChoice.APPLE):  "h264_videotoolbox",
    ("h265", AccelerationChoice.APPLE):  "hevc_videotoolbox",
}

# Pixel format per bit depth for encoders that can carry an HDR source
# through. Every other encoder produces 8-bit output only.
HDR_PIXEL_FORMATS: dict[str, dict[int, str]] = {
    "libx265":           {10: "yuv420p10le", 12: "yuv420p12le"},
    "libaom-av1":        {10: "yuv420p10le", 12: "yuv420p12le"},
    "libvpx-vp9":        {10: "yuv420p10le", 12: "yuv420p12le"},
    "hevc_nvenc":        {10: "p010le"},
    "av1_nvenc":         {10: "p010le"},
    "hevc_amf":          {10: "p010le"},
    "av1_amf":           {10: "p010le"},
    "hevc_qsv":          {10: "p010le"},
    "av1_qsv":           {10: "p010le"},
    "vp9_qsv":           {10: "p010le"},
    "hevc_videotoolbox": {10: "p010le"},
}

# -hwaccel value used when the request also asks for hardware decoding.
HWACCEL_DECODERS: dict[AccelerationChoice, str] = {
    AccelerationChoice.NVIDIA: "cuda",
    AccelerationChoice.AMD:    "d3d11va",
    AccelerationChoice.INTEL:  "qsv",
    AccelerationChoice.APPLE:  "videotoolbox",
}


# Preset layer: settings keys use the same vocabulary as CodecConfig.defaults.
PRESETS: dict[str, dict] = {
    "high-quality":   {"codec": "h264", "crf": 18, "encoder_speed": "slow",   "audio_codec": "aac", "audio_bitrate": "256k"},
    "balanced":       {"codec": "h264", "crf": 23, "encoder_speed": "medium", "audio_codec": "aac", "audio_bitrate": "192k"},
    "fast":           {"codec": "h264", "crf": 28, "encoder_speed": "faster", "audio_codec": "aac", "audio_bitrate": "128k"},
    "hevc-high":      {"codec": "h265", "crf": 20, "encoder_speed": "slow",   "audio_codec": "aac", "audio_bitrate": "256k"},
    "hevc-balanced":  {"codec": "h265", "crf": 24, "encoder_speed": "medium", "audio_codec": "aac", "audio_bitrate": "192k"},
    "av1-high":       {"codec": "av1",  "crf": 25, "cpu_used": 4,             "audio_codec": "libopus", "audio_bitrate": "192k"},
    "hls-standard":   {"codec": "h264", "audio_codec": "aac", "hls_segment_time": 6, "container": ".m3u8"},
    "hls-low":        {"codec": "h264", "bitrate": "500k",  "audio_codec": "aac", "audio_bitrate": "64k",  "hls_segment_time": 6, "container": ".m3u8"},
    "hls-high":       {"codec": "h264", "bitrate": "3000k", "audio_codec": "aac", "audio_bitrate": "128k", "hls_segment_time": 6, "container": ".m3u8"},
    "audio-lossless":         {"codec": "flac"},
    "audio-high-quality":     {"codec": "opus", "audio_bitrate": "256k"},
    "audio-high-quality-mp3": {"codec": "mp3",  "audio_bitrate": "320k"},
    "audio-standard":         {"codec": "opus", "audio_bitrate": "128k"},
    "audio-only":             {"codec": "aac",  "audio_bitrate": "320k"},
    "image-optimization":     {"codec": "webp", "image_quality": 85},
}


# Codecs and vendors the capability prober walks, in probe order.
PROBE_CODECS: tuple[str, ...] = ("h264", "h265", "av1")
PROBE_ACCELERATIONS: tuple[AccelerationChoice, ...] = (
    AccelerationChoice.NONE,
    AccelerationChoice.NVIDIA,
    AccelerationChoice.AMD,
    AccelerationChoice.INTEL,
    AccelerationChoice.APPLE,
)


def resolve_codec(name: str) -> CodecConfig | None:
    key = (name or "").strip().lower()
    key = CODEC_ALIASES.get(key, key)
    return CODECS.get(key)


def hardware_encoder(codec: str, acceleration: AccelerationChoice) -> str | None:
    """Hardware encoder id for the pair, or None when no mapping exists."""
    return HARDWARE_ENCODERS.get((codec, acceleration))
