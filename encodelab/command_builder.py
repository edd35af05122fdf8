"""
encodelab.command_builder
~~~~~~~~~~~~~~~~~~~~~~~~~
Builds ffmpeg argument lists as plain list[str]. No I/O.

Keeping command construction separate means you can:
  - log / print the exact command before running it
  - paste it straight into a terminal for debugging
  - unit-test flag generation without running any process

Settings are merged from three layers, lowest precedence first:

    1. codec structural defaults   (presets.CODECS[...].defaults)
    2. preset defaults             (presets.PRESETS[preset_id])
    3. request overrides           (non-None EncodeRequest fields)

The quality knobs (target size, bitrate, CRF) are treated as one group: if
the request sets any of them, the lower layers' knobs are discarded, then
target size beats bitrate, which beats CRF.

An HDR source (source_info.video.hdr) adds one more default underneath:
the output keeps its bit depth and colour tags when the encoder can carry
them, is tone-mapped to SDR when the request sets `tone_map`, and otherwise
comes out 8-bit SDR with an "hdr_downgraded" notice.
"""

from __future__ import annotations

import logging
import math
import re
import shlex
from pathlib import Path

from encodelab.errors import InvalidRequestError
from encodelab.models import (
    AccelerationChoice,
    BuildNotice,
    CodecKind,
    EncodeCommand,
    EncodeRequest,
    HdrInfo,
    ProbeResult,
)
from encodelab.presets import (
    HDR_PIXEL_FORMATS,
    HWACCEL_DECODERS,
    PRESETS,
    CodecConfig,
    hardware_encoder,
    resolve_codec,
)

logger = logging.getLogger(__name__)

MIN_VIDEO_BITRATE_KBPS = 50
DEFAULT_AUDIO_BITRATE_KBPS = 192

QUALITY_KEYS = ("target_size_bytes", "bitrate", "crf")

# "720p" style shorthands keep the source aspect ratio.
_RESOLUTION_SHORTHAND = re.compile(r"^(\d{3,4})p$", re.IGNORECASE)
_RESOLUTION_EXPLICIT  = re.compile(r"^(\d{2,5})[x:](\d{2,5})$", re.IGNORECASE)
_BITRATE              = re.compile(r"^(\d+(?:\.\d+)?)\s*([km]?)(?:bps|b/s|bits/s)?$", re.IGNORECASE)

# HDR (PQ or HLG) to bt709 via zimg, Hable curve.
TONE_MAP_FILTER = (
    "zscale=t=linear:npl=100,format=gbrpf32le,zscale=p=bt709,"
    "tonemap=tonemap=hable:desat=0,zscale=t=bt709:m=bt709:r=tv,format=yuv420p"
)
SDR_COLOUR_ARGS = ("-color_primaries", "bt709", "-color_trc", "bt709", "-colorspace", "bt709")

# HDR flavours whose dynamic metadata ffmpeg re-encodes cannot carry.
_DYNAMIC_HDR = ("Dolby Vision", "HDR10+")


# ── Public API ────────────────────────────────────────────────────────────────

def build(request: EncodeRequest, *, source_info: ProbeResult | None = None) -> list[str]:
    """Return the ffmpeg arguments for *request* (without the executable)."""
    return build_encode_command(request, source_info=source_info).args


def build_encode_command(
    request: EncodeRequest,
    *,
    source_info: ProbeResult | None = None,
) -> EncodeCommand:
    """
    Build the full ffmpeg argument list for one encode.

    The command structure is:
        -hide_banner
        [-hwaccel <api>]         ← only when hardware_decode is requested
        -i <source>
        <stream options>         ← codec, quality, filters, audio
        <request.extra_args>     ← verbatim
        -y <destination>

    Raises:
        InvalidRequestError – no codec can be resolved, target size without a
                              duration, or an out-of-range numeric knob
    """
    notices: list[BuildNotice] = []

    preset = _resolve_preset(request, notices)
    codec = _resolve_codec(request, preset)
    settings = _merge_layers(codec, preset, request)
    _validate(settings)

    encoder, acceleration = _select_encoder(codec, request.acceleration, notices)

    duration = request.duration
    if duration is None and source_info is not None and source_info.duration_seconds > 0:
        duration = source_info.duration_seconds

    container = settings.get("container") or request.destination.suffix.lower() or codec.default_format

    args: list[str] = ["-hide_banner"]
    if request.hardware_decode and acceleration.is_hardware and acceleration in HWACCEL_DECODERS:
        args += ["-hwaccel", HWACCEL_DECODERS[acceleration]]
    args += ["-i", str(request.source)]

    if codec.kind is CodecKind.VIDEO:
        args += _video_args(codec, encoder, settings, duration, source_info, notices)
        args += _audio_args(settings, with_video=True)
        args += _container_args(container, settings)
    elif codec.kind is CodecKind.AUDIO:
        _warn_ignored_quality(codec, settings, notices)
        args += ["-vn"]
        args += _audio_args({**settings, "audio_codec": encoder}, with_video=False)
    else:
        _warn_ignored_quality(codec, settings, notices)
        args += _image_args(codec, encoder, settings, source_info, notices)

    args += list(request.extra_args)
    args += ["-y", str(request.destination)]

    return EncodeCommand(args=args, encoder=encoder, container=container, notices=tuple(notices))


def build_trial_command(
    codec: str,
    acceleration: AccelerationChoice,
    input_file: Path,
    output_file: Path,
    *,
    frames: int | None = None,
    encoder_speed: str | None = None,
) -> EncodeCommand:
    """
    Command for a disposable capability / benchmark trial: video only, the
    codec's default quality, and optionally a frame cap to keep it short.
    """
    extra: tuple[str, ...] = ("-frames:v", str(frames)) if frames else ()
    request = EncodeRequest(
        source=input_file,
        destination=output_file,
        codec=codec,
        acceleration=acceleration,
        audio_codec="none",
        encoder_speed=encoder_speed,
        extra_args=extra,
    )
    return build_encode_command(request)


def build_test_pattern_command(output_file: Path, size: str = "256x256", seconds: float = 0.5) -> list[str]:
    """
    Arguments that render a tiny synthetic clip with ffmpeg's lavfi testsrc.
    FFV1 is always compiled in, so generating the probe input never depends
    on an optional encoder.
    """
    return [
        "-hide_banner",
        "-f", "lavfi",
        "-i", f"testsrc=size={size}:rate=10:duration={seconds:g}",
        "-pix_fmt", "yuv420p",
        "-c:v", "ffv1",
        "-y", str(output_file),
    ]


def build_probe_command(input_file: Path) -> list[str]:
    """ffprobe arguments used by the metadata probe."""
    return [
        "-v", "quiet",
        "-print_format", "json",
        "-show_format",
        "-show_streams",
        "-show_chapters",
        str(input_file),
    ]


def command_as_string(executable: str, args: list[str]) -> str:
    """Shell-pasteable version of the command for logging."""
    return shlex.join([executable, *args])


# ── Bitrate arithmetic ────────────────────────────────────────────────────────

def calculate_target_bitrate(
    target_bytes: int,
    duration: float,
    audio_kbps: float = DEFAULT_AUDIO_BITRATE_KBPS,
) -> int:
    """
    Video bitrate in kbps that makes the whole file land on *target_bytes*.

        (target_bytes * 8 - audio_kbps * 1000 * duration) / duration / 1000

    floored, with a 50 kbps minimum.
    """
    if target_bytes <= 0:
        raise InvalidRequestError(f"Target size must be positive, got {target_bytes}")
    if duration <= 0:
        raise InvalidRequestError("Target size needs a positive source duration")

    video_bits = target_bytes * 8 - audio_kbps * 1000 * duration
    kbps = math.floor(video_bits / duration / 1000)
    return max(kbps, MIN_VIDEO_BITRATE_KBPS)


def parse_bitrate(value: str | int | float) -> float:
    """
    "5M" → 5000.0, "2500k" → 2500.0, "2500" → 2500.0 (kbps).

    Raises ValueError for anything else.
    """
    if isinstance(value, (int, float)):
        return float(value)
    match = _BITRATE.match(str(value).strip())
    if not match:
        raise ValueError(f"Not a bitrate: {value!r}")
    number, unit = float(match.group(1)), match.group(2).lower()
    return number * 1000 if unit == "m" else number


def estimate_file_size(video_kbps: float, audio_kbps: float, duration: float) -> float:
    """Expected output size in MiB for the given bitrates."""
    total_bits = (video_kbps + audio_kbps) * 1000 * duration
    return total_bits / 8 / (1024 * 1024)


# ── Layers ────────────────────────────────────────────────────────────────────

def _resolve_preset(request: EncodeRequest, notices: list[BuildNotice]) -> dict:
    if not request.preset_id:
        return {}
    preset = PRESETS.get(request.preset_id)
    if preset is not None:
        return preset

    if not request.codec:
        raise InvalidRequestError(
            f"Unknown preset '{request.preset_id}' and no codec given"
        )
    message = f"Unknown preset '{request.preset_id}', using codec defaults for '{request.codec}'"
    logger.warning(message)
    notices.append(BuildNotice("unknown_preset", message, {"preset_id": request.preset_id}))
    return {}


def _resolve_codec(request: EncodeRequest, preset: dict) -> CodecConfig:
    name = request.codec or preset.get("codec", "")
    if not name:
        raise InvalidRequestError("Request has neither a codec nor a preset")
    codec = resolve_codec(name)
    if codec is None:
        raise InvalidRequestError(f"Unknown codec '{name}'")
    return codec


def _merge_layers(codec: CodecConfig, preset: dict, request: EncodeRequest) -> dict:
    overrides = {
        "crf":               request.crf,
        "bitrate":           request.bitrate,
        "target_size_bytes": request.target_size_bytes,
        "resolution":        request.resolution,
        "framerate":         request.framerate,
        "encoder_speed":     request.encoder_speed,
        "audio_codec":       request.audio_codec,
        "audio_bitrate":     request.audio_bitrate,
        "tone_map":          request.tone_map or None,
    }
    overrides = {k: v for k, v in overrides.items() if v is not None}

    settings = dict(codec.defaults)
    settings.update({k: v for k, v in preset.items() if k != "codec"})

    if any(k in overrides for k in QUALITY_KEYS):
        for key in QUALITY_KEYS:
            settings.pop(key, None)
    settings.update(overrides)
    return settings


def _validate(settings: dict) -> None:
    crf = settings.get("crf")
    if crf is not None and not (0 <= int(crf) <= 63):
        raise InvalidRequestError(f"CRF must be between 0 and 63, got {crf}")

    target = settings.get("target_size_bytes")
    if target is not None and target <= 0:
        raise InvalidRequestError(f"Target size must be positive, got {target}")

    framerate = settings.get("framerate")
    if framerate is not None and framerate <= 0:
        raise InvalidRequestError(f"Frame rate must be positive, got {framerate}")

    for key in ("bitrate", "audio_bitrate"):
        if settings.get(key) is None:
            continue
        try:
            if parse_bitrate(settings[key]) <= 0:
                raise ValueError(settings[key])
        except ValueError as exc:
            raise InvalidRequestError(f"Invalid {key.replace('_', ' ')}: {settings[key]!r}") from exc


def _select_encoder(
    codec: CodecConfig,
    acceleration: AccelerationChoice,
    notices: list[BuildNotice],
) -> tuple[str, AccelerationChoice]:
    if not acceleration.is_hardware:
        return codec.software_encoder, AccelerationChoice.NONE

    encoder = hardware_encoder(codec.name, acceleration) if codec.kind is CodecKind.VIDEO else None
    if encoder is not None:
        return encoder, acceleration

    message = (
        f"No {acceleration.value} hardware encoder for {codec.display_name}; "
        f"using software encoder {codec.software_encoder}"
    )
    logger.warning(message)
    notices.append(BuildNotice(
        "downgraded_to_software",
        message,
        {"codec": codec.name, "acceleration": acceleration.value, "encoder": codec.software_encoder},
    ))
    return codec.software_encoder, AccelerationChoice.NONE


# ── Stream arguments ──────────────────────────────────────────────────────────

def _video_args(
    codec: CodecConfig,
    encoder: str,
    settings: dict,
    duration: float | None,
    source_info: ProbeResult | None,
    notices: list[BuildNotice],
) -> list[str]:
    args = ["-c:v", encoder]
    software = encoder == codec.software_encoder

    if settings.get("target_size_bytes") is not None:
        if not duration:
            raise InvalidRequestError("Target file size needs the source duration")
        audio_kbps = _audio_kbps(settings)
        kbps = calculate_target_bitrate(settings["target_size_bytes"], duration, audio_kbps)
        logger.debug("Target size %d bytes over %.2fs → %d kbps video",
                     settings["target_size_bytes"], duration, kbps)
        args += ["-b:v", f"{kbps}k"]
    elif settings.get("bitrate") is not None:
        args += ["-b:v", str(settings["bitrate"])]
    else:
        crf = settings.get("crf", codec.default_crf)
        args += ["-crf", str(crf)]
        if not software:
            message = f"{encoder} does not honour -crf; the encoder's own rate control decides quality"
            logger.info(message)
            notices.append(BuildNotice("ignored_option", message, {"option": "-crf", "encoder": encoder}))

    if settings.get("encoder_speed") and software and codec.supports_speed_preset:
        args += ["-preset", str(settings["encoder_speed"])]
    if settings.get("cpu_used") is not None and encoder == "libaom-av1":
        args += ["-cpu-used", str(settings["cpu_used"])]
    pix_fmt = settings.get("pix_fmt") if software else None
    colour: list[str] = []
    filters = [_scale_filter(settings.get("resolution"), source_info, notices)]

    hdr = _source_hdr(source_info)
    if hdr is not None and settings.get("tone_map"):
        logger.info("Tone-mapping %s source to SDR", hdr.kind)
        filters.append(TONE_MAP_FILTER)
        colour = list(SDR_COLOUR_ARGS)
    elif hdr is not None:
        hdr_pix_fmt, colour = _hdr_args(encoder, hdr, notices)
        pix_fmt = hdr_pix_fmt or pix_fmt
    elif settings.get("tone_map") and source_info is not None and source_info.video is not None:
        message = "Source is not HDR; tone mapping skipped"
        logger.info(message)
        notices.append(BuildNotice("ignored_option", message, {"option": "tone_map"}))

    if pix_fmt:
        args += ["-pix_fmt", pix_fmt]
    args += colour

    vf = ",".join(f for f in filters if f)
    if vf:
        args += ["-vf", vf]
    if settings.get("framerate"):
        args += ["-r", f"{settings['framerate']:g}"]
    return args


def _audio_args(settings: dict, *, with_video: bool) -> list[str]:
    audio_codec = settings.get("audio_codec")
    if audio_codec == "none":
        return ["-an"]
    if not audio_codec:
        return []

    encoder = audio_codec
    resolved = resolve_codec(audio_codec)
    if resolved is not None and resolved.kind is CodecKind.AUDIO:
        encoder = resolved.software_encoder

    args = ["-c:a", encoder]
    if settings.get("audio_bitrate") and encoder not in ("flac", "copy", "pcm_s16le"):
        args += ["-b:a", str(settings["audio_bitrate"])]
    return args


def _container_args(container: str, settings: dict) -> list[str]:
    args: list[str] = []
    if container in (".mp4", ".mov", ".m4v"):
        if settings.get("tag"):
            args += ["-tag:v", settings["tag"]]
        args += ["-movflags", "+faststart"]
    elif container == ".m3u8":
        args += [
            "-f", "hls",
            "-hls_time", str(settings.get("hls_segment_time", 6)),
            "-hls_playlist_type", "vod",
        ]
    return args


def _image_args(
    codec: CodecConfig,
    encoder: str,
    settings: dict,
    source_info: ProbeResult | None,
    notices: list[BuildNotice],
) -> list[str]:
    args = ["-frames:v", "1", "-c:v", encoder]
    quality = settings.get("image_quality")
    if quality is not None:
        if encoder == "libwebp":
            args += ["-quality", str(quality)]
        elif encoder == "mjpeg":
            args += ["-q:v", str(quality)]
    scale = _scale_filter(settings.get("resolution"), source_info, notices)
    if scale:
        args += ["-vf", scale]
    return args


def _warn_ignored_quality(codec: CodecConfig, settings: dict, notices: list[BuildNotice]) -> None:
    for key in QUALITY_KEYS:
        if settings.get(key) is None:
            continue
        message = f"{key} has no effect on {codec.kind.value} codec {codec.display_name}"
        logger.info(message)
        notices.append(BuildNotice("ignored_option", message, {"option": key}))


def _scale_filter(
    resolution: str | None,
    source_info: ProbeResult | None,
    notices: list[BuildNotice],
) -> str | None:
    if not resolution:
        return None

    text = str(resolution).strip()
    short = _RESOLUTION_SHORTHAND.match(text)
    explicit = _RESOLUTION_EXPLICIT.match(text)
    if short:
        width, height = -2, int(short.group(1))
    elif explicit:
        width, height = int(explicit.group(1)), int(explicit.group(2))
    else:
        raise InvalidRequestError(f"Unrecognised resolution '{resolution}'")

    source_video = source_info.video if source_info is not None else None
    if source_video is not None and source_video.height and height > source_video.height:
        message = (
            f"Requested height {height} exceeds source height {source_video.height}; "
            f"keeping source resolution"
        )
        logger.info(message)
        notices.append(BuildNotice("ignored_option", message, {"option": "resolution"}))
        return None

    return f"scale={width}:{height}"


def _audio_kbps(settings: dict) -> float:
    if settings.get("audio_codec") == "none":
        return 0.0
    if settings.get("audio_bitrate"):
        return parse_bitrate(settings["audio_bitrate"])
    return DEFAULT_AUDIO_BITRATE_KBPS


def _source_hdr(source_info: ProbeResult | None) -> HdrInfo | None:
    video = source_info.video if source_info is not None else None
    if video is None or video.hdr is None or not video.hdr.is_hdr:
        return None
    return video.hdr


def _hdr_args(encoder: str, hdr: HdrInfo, notices: list[BuildNotice]) -> tuple[str | None, list[str]]:
    """
    Pixel format and colour tags that carry *hdr* through *encoder*.
    Returns (None, []) and records a notice when the encoder is 8-bit only.
    """
    formats = HDR_PIXEL_FORMATS.get(encoder)
    if formats is None:
        message = (
            f"{encoder} cannot keep the {hdr.kind} source's bit depth; output will be 8-bit SDR "
            f"without tone mapping (use H.265, AV1 or VP9, or enable tone mapping)"
        )
        logger.warning(message)
        notices.append(BuildNotice("hdr_downgraded", message, {"encoder": encoder, "hdr": hdr.kind}))
        return None, []

    depth = max(hdr.bit_depth, 10)
    pix_fmt = formats.get(depth, formats[10])
    if hdr.kind in _DYNAMIC_HDR:
        message = f"{hdr.kind} dynamic metadata is not carried over; the output keeps the static HDR layer"
        logger.info(message)
        notices.append(BuildNotice("hdr_metadata_dropped", message, {"hdr": hdr.kind}))

    primaries = hdr.color_primaries or "bt2020"
    transfer = hdr.color_transfer or ("arib-std-b67" if hdr.kind == "HLG" else "smpte2084")
    matrix = hdr.color_space or "bt2020nc"
    args = [
        "-color_primaries", primaries,
        "-color_trc", transfer,
        "-colorspace", matrix,
        "-color_range", "tv",
    ]
    if encoder == "libx265":
        args += [
            "-profile:v", "main12" if pix_fmt == "yuv420p12le" else "main10",
            "-x265-params", f"repeat-headers=1:colorprim={primaries}:transfer={transfer}:colormatrix={matrix}",
        ]
    return pix_fmt, args
