from __future__ import annotations

import datetime as _dt
import logging
from pathlib import Path
from typing import Any, Dict, List

from jinja2 import Template

from .models import FlaggedRegion

logger = logging.getLogger(__name__)

_MAX_REGION_ROWS = 200


_REPORT_TEMPLATE = Template(
    """<!doctype html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <title>asmreadcheck Report</title>
  <style>
    body { font-family: Arial, Helvetica, sans-serif; margin: 24px; }
    code, pre { background: #f6f8fa; padding: 2px 4px; border-radius: 4px; }
    h1, h2, h3 { margin-top: 1.2em; }
    table { border-collapse: collapse; margin-top: 0.6em; }
    th, td { border: 1px solid #ddd; padding: 8px; }
    th { background: #f2f2f2; text-align: left; }
    .grid { display: grid; grid-template-columns: 1fr 1fr; gap: 16px; }
    .card { border: 1px solid #ddd; border-radius: 8px; padding: 12px; }
    .small { color: #666; font-size: 0.9em; }
    .warn { color: #a33; }
    img { max-width: 100%; height: auto; border: 1px solid #eee; border-radius: 6px; }
  </style>
</head>
<body>

<h1>asmreadcheck Report</h1>
<p class="small">Generated: {{ generated_at }}</p>
{% if summary.cancelled %}
<p class="warn">This run was cancelled; only completed contigs are reported.</p>
{% endif %}

<h2>Run summary</h2>
<div class="grid">
  <div class="card">
    <h3>Inputs</h3>
    <table>
      <tr><th>BAM</th><td><code>{{ bam_path }}</code></td></tr>
      <tr><th>Reference</th><td><code>{{ ref_path or "not provided" }}</code></td></tr>
      <tr><th>Contigs processed</th><td>{{ summary.contigs_processed }}</td></tr>
      <tr><th>Contigs failed</th><td>{{ summary.contigs_failed }}</td></tr>
      <tr><th>Workers</th><td>{{ summary.workers }}</td></tr>
    </table>
  </div>
  <div class="card">
    <h3>Parameters</h3>
    <table>
      <tr><th>Min MAPQ</th><td>{{ config.min_mapping_quality }}</td></tr>
      <tr><th>Window width / step</th><td>{{ config.window_width }} / {{ config.window_step }}</td></tr>
      <tr><th>Merge gap</th><td>{{ config.merge_gap }}</td></tr>
      <tr><th>Min window data fraction</th><td>{{ config.min_window_coverage_fraction }}</td></tr>
      <tr><th>Ignored contig ends</th><td>{{ config.min_dist_to_end }} bp</td></tr>
      {% for name, t in thresholds %}
      <tr><th>z threshold: {{ name }}</th><td>{{ t }}</td></tr>
      {% endfor %}
    </table>
  </div>
</div>

<h2>Reads</h2>
<table>
  <tr><th>Total reads seen</th><td>{{ counts.reads_total }}</td></tr>
  <tr><th>Reads used</th><td>{{ counts.reads_used }}</td></tr>
  <tr><th>Unmapped skipped</th><td>{{ counts.reads_unmapped }}</td></tr>
  <tr><th>Low MAPQ skipped</th><td>{{ counts.reads_skipped_low_mapq }}</td></tr>
  <tr><th>Duplicates skipped</th><td>{{ counts.reads_skipped_duplicates }}</td></tr>
  <tr><th>Secondary skipped</th><td>{{ counts.reads_skipped_secondary }}</td></tr>
  <tr><th>Supplementary skipped</th><td>{{ counts.reads_skipped_supplementary }}</td></tr>
  <tr><th>Discordant pairs</th><td>{{ counts.reads_discordant }}</td></tr>
  <tr><th>Out-of-bounds positions dropped</th><td>{{ counts.positions_out_of_bounds }}</td></tr>
</table>

<h2>Findings</h2>
<table>
  <tr><th>Flagged regions</th><td>{{ summary.regions }}</td></tr>
  <tr><th>Clip hotspots</th><td>{{ summary.clip_sites }}</td></tr>
  <tr><th>Zero-coverage ranges</th><td>{{ summary.zero_coverage_ranges }}</td></tr>
</table>

{% if summary.failures %}
<h2 class="warn">Skipped contigs</h2>
<table>
  <tr><th>Contig</th><th>Kind</th><th>Reason</th></tr>
  {% for f in summary.failures %}
  <tr><td>{{ f.contig }}</td><td>{{ f.kind }}</td><td>{{ f.reason }}</td></tr>
  {% endfor %}
</table>
{% endif %}

<h2>Plots</h2>
<div class="grid">
  <div class="card">
    <h3>Regions per channel</h3>
    <img src="{{ plots.channel_counts }}" alt="channel counts">
  </div>
  <div class="card">
    <h3>Region length</h3>
    <img src="{{ plots.region_lengths }}" alt="region length histogram">
  </div>
</div>
<div class="grid" style="margin-top:16px;">
  <div class="card">
    <h3>Confidence</h3>
    <img src="{{ plots.confidence }}" alt="confidence histogram">
  </div>
</div>

<h2>Top regions</h2>
{% if regions %}
<table>
  <tr><th>Contig</th><th>Start</th><th>End</th><th>Confidence</th><th>Channels</th></tr>
  {% for r in regions %}
  <tr><td>{{ r.contig }}</td><td>{{ r.start }}</td><td>{{ r.end }}</td>
      <td>{{ "%.3f"|format(r.confidence) }}</td><td>{{ r.channel_names }}</td></tr>
  {% endfor %}
</table>
{% if regions_truncated %}<p class="small">Showing the {{ regions|length }} most confident regions.</p>{% endif %}
{% else %}
<p>No regions flagged.</p>
{% endif %}

<h2>Outputs</h2>
<ul>
  <li><code>{{ regions_tsv }}</code> (flagged regions)</li>
  <li><code>{{ clipping_tsv }}</code> (clip hotspots)</li>
  <li><code>{{ zero_cov_tsv }}</code> (zero-coverage ranges)</li>
  <li><code>summary.json</code>, <code>config.json</code> (machine-readable)</li>
</ul>

<h2>Interpretation notes</h2>
<ul>
  <li>z-scores compare each window to the other windows of the same contig, so a contig with uniformly odd signal is not flagged.</li>
  <li>Confidence is <code>1 - 2^-(sum |z|/threshold)</code> over contributing channels: 0.5 means one channel right at its threshold.</li>
  <li>Reads overhanging contig ends are expected; clips there are not counted.</li>
</ul>

<hr>
<p class="small">asmreadcheck {{ version }}</p>
</body>
</html>"""
)


def render_report(
    *,
    outdir: str | Path,
    version: str,
    summary: Dict[str, Any],
    config: Dict[str, Any],
    regions: List[FlaggedRegion],
    bam_path: str,
    ref_path: str | None,
    outputs: Dict[str, str],
    plots: Dict[str, str],
) -> Path:
    outdir = Path(outdir)
    outdir.mkdir(parents=True, exist_ok=True)

    top = sorted(regions, key=lambda r: (-r.confidence, r.contig, r.start))[:_MAX_REGION_ROWS]

    html = _REPORT_TEMPLATE.render(
        generated_at=_dt.datetime.now().isoformat(timespec="seconds"),
        version=version,
        bam_path=bam_path,
        ref_path=ref_path,
        summary=summary,
        counts=summary.get("counts", {}),
        config=config,
        thresholds=sorted(config.get("z_thresholds", {}).items()),
        regions=top,
        regions_truncated=len(regions) > len(top),
        regions_tsv=outputs.get("regions"),
        clipping_tsv=outputs.get("clipping"),
        zero_cov_tsv=outputs.get("zero_coverage"),
        plots=plots,
    )

    out_path = outdir / "report.html"
    out_path.write_text(html, encoding="utf-8")
    return out_path
