import gzip
import json
import subprocess
import sys
from pathlib import Path

from asmreadcheck.cli import main
from asmreadcheck.toy_data import make_toy_data


def _run_cli(args: list[str]) -> subprocess.CompletedProcess:
    return subprocess.run(
        [sys.executable, "-m", "asmreadcheck"] + args,
        check=False,
        capture_output=True,
        text=True,
    )


def test_quickstart_output() -> None:
    cp = _run_cli(["quickstart"])
    assert cp.returncode == 0
    assert "asmreadcheck scan" in cp.stdout
    assert "asmreadcheck make-toy-data" in cp.stdout


def test_scan_dry_run_does_not_write_outputs(tmp_path: Path) -> None:
    toy = make_toy_data(outdir=tmp_path / "toy")
    outdir = tmp_path / "scan"
    cp = _run_cli(
        ["scan", "--bam", toy["bam"], "--ref", toy["ref_fa"], "--outdir", str(outdir), "--dry-run"]
    )
    assert cp.returncode == 0
    assert "Dry-run" in cp.stdout
    assert not (outdir / "summary.json").exists()


def test_make_toy_data_and_scan(tmp_path: Path) -> None:
    toy_dir = tmp_path / "toy"
    cp = _run_cli(["make-toy-data", "--outdir", str(toy_dir)])
    assert cp.returncode == 0

    outdir = tmp_path / "out"
    cp = _run_cli(
        [
            "scan",
            "--bam",
            str(toy_dir / "reads.bam"),
            "--ref",
            str(toy_dir / "toy_assembly.fa"),
            "--outdir",
            str(outdir),
            "--no-progress",
        ]
    )
    assert cp.returncode == 0, cp.stderr
    assert (outdir / "report.html").exists()
    assert (outdir / "plots" / "channel_counts.png").exists()
    assert (outdir / "config.json").exists()

    summary = json.loads((outdir / "summary.json").read_text())
    assert summary["contigs_processed"] == 2
    assert summary["contigs_failed"] == 0
    assert summary["counts"]["reads_used"] > 0

    with gzip.open(outdir / "regions.tsv.gz", "rt") as fh:
        assert fh.readline().startswith("contig\tstart\tend\tconfidence")
        regions = [line.rstrip("\n").split("\t") for line in fh]
    ctg1 = [(int(r[1]), int(r[2])) for r in regions if r[0] == "ctg1"]
    assert [r for r in regions if r[0] == "ctg2"] == []
    for lo, hi in [(1000, 1500), (1950, 2050), (4000, 4300)]:
        assert any(start < hi and end > lo for start, end in ctg1), (lo, hi, ctg1)

    with gzip.open(outdir / "zero_coverage.tsv.gz", "rt") as fh:
        rows = [line.rstrip("\n").split("\t") for line in fh][1:]
    assert ["ctg1", "8000", "4000", "4300", "300"] in rows

    # Second run with --resume is a no-op.
    cp = _run_cli(
        ["scan", "--bam", str(toy_dir / "reads.bam"), "--outdir", str(outdir), "--resume"]
    )
    assert cp.returncode == 0
    assert "report.html" in cp.stdout


def test_scan_without_reference_and_restricted_contigs(tmp_path: Path) -> None:
    toy = make_toy_data(outdir=tmp_path / "toy")
    outdir = tmp_path / "out"
    rc = main(
        [
            "scan",
            "--bam",
            toy["bam"],
            "--outdir",
            str(outdir),
            "--contig",
            "ctg2",
            "--channels",
            "coverage,clip_fraction",
            "--no-report",
            "--no-progress",
        ]
    )
    assert rc == 0
    summary = json.loads((outdir / "summary.json").read_text())
    assert [c["contig"] for c in summary["per_contig"]] == ["ctg2"]
    assert not (outdir / "report.html").exists()


def test_bad_settings_exit_with_error(tmp_path: Path) -> None:
    toy = make_toy_data(outdir=tmp_path / "toy")
    cp = _run_cli(
        [
            "scan",
            "--bam",
            toy["bam"],
            "--outdir",
            str(tmp_path / "out"),
            "--window-width",
            "50",
            "--window-step",
            "100",
        ]
    )
    assert cp.returncode == 2
    assert "ConfigError" in cp.stderr

    cp = _run_cli(
        ["scan", "--bam", toy["bam"], "--outdir", str(tmp_path / "out2"), "--contig", "nope"]
    )
    assert cp.returncode == 2
    assert "nope" in cp.stderr
