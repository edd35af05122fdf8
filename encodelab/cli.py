"""
encodelab.cli
~~~~~~~~~~~~~
Command-line front end.

    encodelab tools                       check ffmpeg / ffprobe
    encodelab probe [--prefilter]         build the capability matrix
    encodelab benchmark --media FILE      benchmark what the matrix found
    encodelab encode IN... -o OUT         run production encodes
    encodelab quality REF ENCODED         PSNR / SSIM / VMAF
    encodelab runs [--show FILE]          saved benchmark runs
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from PySide6.QtCore import QCoreApplication

from encodelab.benchmark import TEST_VIDEOS, BenchmarkScheduler, find_test_video
from encodelab.capabilities import CapabilityProber
from encodelab.command_builder import build_encode_command, command_as_string
from encodelab.config import EngineConfig, load_config
from encodelab.downloader import ensure_media
from encodelab.errors import EngineError
from encodelab.models import AccelerationChoice, BenchmarkRun, EncodeRequest, JobStatus, TestMedia
from encodelab.overseer import EncodeQueue
from encodelab.presets import PRESETS
from encodelab.probe import probe
from encodelab.quality import analyze_quality
from encodelab.reducer import sort_results, summarize
from encodelab.store import BenchmarkStore, CapabilityCache
from encodelab.sysinfo import check_tools

logger = logging.getLogger(__name__)

SORT_CHOICES = ("speed", "fps", "efficiency", "size", "time")


# ── Commands ──────────────────────────────────────────────────────────────────

def cmd_tools(args, config: EngineConfig) -> int:
    versions = check_tools(config)
    for tool, version in versions.items():
        print(f"{tool:8} {version or 'NOT FOUND'}")
    if not all(versions.values()):
        print("\nInstall ffmpeg (which ships ffprobe) and make sure it is on PATH.")
        return 1
    return 0


def cmd_probe(args, config: EngineConfig) -> int:
    cache = CapabilityCache(config.capability_cache_path)
    if args.cached:
        entries = cache.load()
        if not entries:
            print("No capability matrix yet. Run `encodelab probe`.")
            return 1
    else:
        prober = CapabilityProber(config, prefilter_compiled=args.prefilter)
        entries = prober.probe_and_store(cache)

    last = cache.last_probed_at
    print(f"Last probed at {last:%Y-%m-%d %H:%M:%S %Z}\n" if last else "")
    for entry in entries:
        mark = "✓" if entry.available else "✗"
        detail = entry.encoder if entry.available else entry.error
        print(f"  [{mark}] {entry.label:22} {detail}")
    return 0


def cmd_benchmark(args, config: EngineConfig) -> int:
    media = _resolve_media(args, config)

    entries = CapabilityCache(config.capability_cache_path).available()
    if args.codec:
        entries = [e for e in entries if e.codec in args.codec]
    if args.accel:
        entries = [e for e in entries if e.acceleration.value in args.accel]
    if not entries:
        print("[✗] Nothing to benchmark. Run `encodelab probe` first or widen --codec/--accel.")
        return 1

    run = BenchmarkScheduler(config).run(entries, media)
    path = BenchmarkStore(config.benchmark_dir).save(run)
    _print_run(run, args.sort)
    print(f"\nSaved to {path}")
    return 0


def cmd_encode(args, config: EngineConfig) -> int:
    requests = [_build_request(args, source, dest) for source, dest in _pair_outputs(args)]

    if args.print_only:
        for request in requests:
            command = build_encode_command(request, source_info=_source_info(request.source, config))
            print(command_as_string(config.ffmpeg, command.args))
            for notice in command.notices:
                print(f"  [!] {notice.message}")
        return 0

    app = QCoreApplication.instance() or QCoreApplication([])
    queue = EncodeQueue(config, slots=args.slots)
    queue.item_notice.connect(lambda item_id, notice: print(f"[!] {notice.message}"))
    queue.item_progress.connect(
        lambda item_id, pct: print(f"\r{queue.get(item_id).request.source.name}: {pct:5.1f}%", end="", flush=True)
    )
    queue.item_finished.connect(lambda item_id, outcome: _print_finished(queue.get(item_id)))
    queue.drained.connect(app.quit)

    for request in requests:
        queue.submit(request)
    app.exec()

    return 0 if all(item.status is JobStatus.DONE for item in queue.items()) else 1


def cmd_quality(args, config: EngineConfig) -> int:
    metrics = analyze_quality(args.reference, args.encoded, config, vmaf=not args.no_vmaf)
    for name in ("psnr", "ssim", "vmaf"):
        value = getattr(metrics, name)
        print(f"{name.upper():5} {'n/a' if value is None else f'{value:.4f}'}")
    return 0


def cmd_runs(args, config: EngineConfig) -> int:
    store = BenchmarkStore(config.benchmark_dir)
    if args.show:
        _print_run(store.load(args.show), args.sort)
        return 0

    paths = store.list_runs()
    if not paths:
        print("No saved benchmark runs.")
    for path in paths:
        run = store.load(path)
        summary = summarize(run)
        print(f"{path.name}  {run.test_media.name}  {summary.succeeded}/{summary.total} ok"
              f"{'  (cancelled)' if run.cancelled else ''}")
    return 0


# ── Helpers ───────────────────────────────────────────────────────────────────

def build_output_path(input_file: Path, output_folder: Path, output_extension: str) -> Path:
    """
    Given an input file, return the expected output path.

    Example:
        input_file       = Path("/rushes/clip001.mov")
        output_folder    = Path("/proxies")
        output_extension = ".mp4"
        → Path("/proxies/clip001.mp4")
    """
    return output_folder / (input_file.stem + output_extension)


def _pair_outputs(args) -> list[tuple[Path, Path]]:
    if len(args.inputs) == 1 and args.output.suffix and not args.output.is_dir():
        return [(args.inputs[0], args.output)]
    ext = args.ext if args.ext.startswith(".") else f".{args.ext}"
    return [(source, build_output_path(source, args.output, ext)) for source in args.inputs]


def _build_request(args, source: Path, dest: Path) -> EncodeRequest:
    return EncodeRequest(
        source=source,
        destination=dest,
        codec=args.codec or "",
        preset_id=args.preset or "",
        crf=args.crf,
        bitrate=args.bitrate,
        target_size_bytes=int(args.target_size_mb * 1024 * 1024) if args.target_size_mb else None,
        resolution=args.resolution,
        framerate=args.fps,
        encoder_speed=args.speed,
        audio_codec=args.audio_codec,
        audio_bitrate=args.audio_bitrate,
        acceleration=AccelerationChoice(args.accel),
        hardware_decode=args.hwdecode,
        tone_map=args.tone_map,
    )


def _source_info(source: Path, config: EngineConfig):
    try:
        return probe(source, config)
    except (OSError, EngineError) as exc:
        logger.debug("No source info for %s: %s", source, exc)
        return None


def _resolve_media(args, config: EngineConfig) -> TestMedia:
    if args.media:
        return TestMedia(name=args.media.name, path=args.media)

    media = find_test_video(args.video)
    if media is None:
        names = ", ".join(m.resolution for m in TEST_VIDEOS)
        raise SystemExit(f"Unknown test video {args.video!r}; choose one of {names}")

    def report(done: int, total: int) -> None:
        if total:
            print(f"\rDownloading {media.name}: {done / total * 100:5.1f}%", end="", flush=True)

    media = ensure_media(media, config.media_dir, report)
    print()
    return media


def _print_finished(item) -> None:
    print()
    if item.status is JobStatus.DONE:
        print(f"[✓] {item.request.destination} ({item.outcome.file_size} bytes, "
              f"{item.outcome.wall_seconds:.1f}s)")
    elif item.status is JobStatus.CANCELLED:
        print(f"[-] {item.request.source.name} cancelled")
    else:
        print(f"[✗] {item.request.source.name}: {item.error_message}")
        if item.error_analysis is not None:
            print(f"    {item.error_analysis.title}: {item.error_analysis.suggestion}")


def _print_run(run: BenchmarkRun, sort_by: str) -> None:
    print(f"Benchmark {run.run_id[:8]} on {run.test_media.name} "
          f"({run.system_info.platform} {run.system_info.machine}, ffmpeg {run.system_info.ffmpeg_version})")
    info = run.system_info
    if info.memory_total:
        print(f"  {info.cpu_model or info.processor} ({info.cpu_count} threads), "
              f"{info.memory_total / 2**30:.1f} GiB RAM")
    if run.cancelled:
        print("(cancelled, partial results)")
    print()
    for trial in sort_results(run.trials, sort_by):
        o = trial.outcome
        if o is not None and o.success:
            print(f"  {trial.entry.label:22} {o.wall_seconds:8.2f}s {o.fps:8.1f} fps "
                  f"{o.speed:6.2f}x {o.file_size / 1024 / 1024:9.2f} MiB {o.bitrate_kbps:9.0f} kb/s")
        else:
            print(f"  {trial.entry.label:22} FAILED  {o.error if o else ''}")

    summary = summarize(run)
    print()
    for title, best in (("Fastest", summary.fastest),
                        ("Highest fps", summary.highest_fps),
                        ("Most efficient", summary.most_efficient)):
        print(f"  {title:15} {best.entry.label if best else '-'}")


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="[%(name)s] %(message)s",
    )


# ── Entry point ───────────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="encodelab", description="Encoding capability lab for ffmpeg")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("--config", type=Path, help="Path to config.json")
    subparsers = parser.add_subparsers(dest="command", required=True)

    tools = subparsers.add_parser("tools", help="Check that ffmpeg and ffprobe are installed")
    tools.set_defaults(func=cmd_tools)

    probe = subparsers.add_parser("probe", help="Detect working codec / accelerator combinations")
    probe.add_argument("--prefilter", action="store_true", help="Skip encoders not compiled into ffmpeg")
    probe.add_argument("--cached", action="store_true", help="Show the stored matrix without probing")
    probe.set_defaults(func=cmd_probe)

    bench = subparsers.add_parser("benchmark", help="Benchmark the available combinations")
    source = bench.add_mutually_exclusive_group(required=True)
    source.add_argument("--media", type=Path, help="Local test clip")
    source.add_argument("--video", help="Download a test clip by resolution (480p, 720p, 1080p, 2160p)")
    bench.add_argument("--codec", nargs="+", help="Only these codecs")
    bench.add_argument("--accel", nargs="+", choices=[a.value for a in AccelerationChoice], help="Only these accelerators")
    bench.add_argument("--sort", choices=SORT_CHOICES, default="speed")
    bench.set_defaults(func=cmd_benchmark)

    encode = subparsers.add_parser("encode", help="Encode one or more files")
    encode.add_argument("inputs", nargs="+", type=Path)
    encode.add_argument("-o", "--output", type=Path, required=True, help="Output file, or folder for several inputs")
    encode.add_argument("--ext", default=".mp4", help="Output extension when writing to a folder")
    encode.add_argument("--codec", help="h264, h265, av1, vp9, aac, opus, mp3, flac, webp, jpeg, png")
    encode.add_argument("--preset", choices=sorted(PRESETS), help="Use a predefined preset")
    encode.add_argument("--crf", type=int)
    encode.add_argument("--bitrate", help="Video bitrate, e.g. 2500k or 5M")
    encode.add_argument("--target-size-mb", type=float, help="Aim for this output size")
    encode.add_argument("--resolution", help="720p or 1280x720")
    encode.add_argument("--fps", type=float)
    encode.add_argument("--speed", help="Encoder speed preset, e.g. medium")
    encode.add_argument("--audio-codec")
    encode.add_argument("--audio-bitrate")
    encode.add_argument("--accel", choices=[a.value for a in AccelerationChoice], default="none")
    encode.add_argument("--hwdecode", action="store_true", help="Hardware-accelerated decoding")
    encode.add_argument("--tone-map", action="store_true", help="Tone-map an HDR source to SDR")
    encode.add_argument("--slots", type=int, help="Concurrent encodes")
    encode.add_argument("--print", dest="print_only", action="store_true", help="Only print the ffmpeg commands")
    encode.set_defaults(func=cmd_encode)

    quality = subparsers.add_parser("quality", help="Compare an encode against its source")
    quality.add_argument("reference", type=Path)
    quality.add_argument("encoded", type=Path)
    quality.add_argument("--no-vmaf", action="store_true")
    quality.set_defaults(func=cmd_quality)

    runs = subparsers.add_parser("runs", help="List or show saved benchmark runs")
    runs.add_argument("--show", type=Path, help="A saved run file")
    runs.add_argument("--sort", choices=SORT_CHOICES, default="speed")
    runs.set_defaults(func=cmd_runs)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    _configure_logging(args.verbose)
    try:
        config = load_config(args.config)
        return args.func(args, config)
    except (EngineError, OSError) as exc:
        print(f"[✗] {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
