"""Quality metric parsing."""

import math
from pathlib import Path

import pytest

from conftest import script
from encodelab import quality
from encodelab.quality import analyze_quality, build_metric_command, parse_metric

PSNR_LOG = (
    "[Parsed_psnr_0 @ 0x55d] PSNR y:42.10 u:45.90 v:46.20 average:43.051234 "
    "min:39.87 max:48.12\n"
)
SSIM_LOG = "[Parsed_ssim_0 @ 0x55d] SSIM Y:0.981 (17.2) U:0.990 (20.0) V:0.991 (20.5) All:0.984512 (18.08)\n"
VMAF_LOG = "[libvmaf @ 0x55d] VMAF score: 94.123456\n"


@pytest.mark.parametrize("name, text, value", [
    ("psnr", PSNR_LOG, 43.051234),
    ("ssim", SSIM_LOG, 0.984512),
    ("vmaf", VMAF_LOG, 94.123456),
])
def test_parse_metric(name, text, value) -> None:
    assert parse_metric(name, text) == pytest.approx(value)


def test_identical_inputs_give_infinite_psnr() -> None:
    assert math.isinf(parse_metric("psnr", "PSNR y:inf u:inf v:inf average:inf min:inf max:inf"))


def test_missing_metric_is_none() -> None:
    assert parse_metric("vmaf", "No such filter: 'libvmaf'") is None


def test_distorted_input_comes_first() -> None:
    args = build_metric_command(Path("ref.mov"), Path("enc.mp4"), "ssim")
    assert args.index("enc.mp4") < args.index("ref.mov")
    assert args[args.index("-lavfi") + 1] == "ssim"


def test_analyze_quality_collects_what_it_can(config, monkeypatch) -> None:
    logs = {"psnr": PSNR_LOG, "ssim": SSIM_LOG}

    def fake_command(reference, encoded, filter_name):
        text = logs.get(filter_name, "No such filter: 'libvmaf'\n")
        code = 0 if filter_name in logs else 1
        return script(f"import sys; sys.stderr.write({text!r}); sys.exit({code})")

    monkeypatch.setattr(quality, "build_metric_command", fake_command)
    metrics = analyze_quality(Path("ref.mov"), Path("enc.mp4"), config, timeout=20)

    assert metrics.psnr == pytest.approx(43.051234)
    assert metrics.ssim == pytest.approx(0.984512)
    assert metrics.vmaf is None
