from __future__ import annotations

import datetime as _dt
import logging
from pathlib import Path
from typing import Any, Dict

from jinja2 import Template

logger = logging.getLogger(__name__)


_REPORT_TEMPLATE = Template(
    """<!doctype html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <title>PileupCall Report</title>
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
    img { max-width: 100%; height: auto; border: 1px solid #eee; border-radius: 6px; }
  </style>
</head>
<body>

<h1>PileupCall Report</h1>
<p class="small">Generated: {{ generated_at }}</p>

<h2>Run summary</h2>
<div class="grid">
  <div class="card">
    <h3>Inputs</h3>
    <table>
      <tr><th>BAM</th><td><code>{{ bam_path }}</code></td></tr>
      <tr><th>Reference</th><td><code>{{ ref_path }}</code></td></tr>
      <tr><th>Region</th><td><code>{{ region or "all" }}</code></td></tr>
    </table>
  </div>
  <div class="card">
    <h3>Thresholds</h3>
    <table>
      {% for key, value in config|dictsort %}
      <tr><th>{{ key }}</th><td>{{ value }}</td></tr>
      {% endfor %}
    </table>
  </div>
</div>

<h2>Sites</h2>
<table>
  {% for key, value in counts|dictsort %}
  <tr><th>{{ key }}</th><td>{{ value }}</td></tr>
  {% endfor %}
</table>

<h2>Records</h2>
<table>
  <tr><th>Kind</th><th>Reporting</th><th>Assembly filter</th></tr>
  {% for kind in ["SNP", "INS", "DEL"] %}
  <tr><td>{{ kind }}</td><td>{{ records.reporting[kind] }}</td><td>{{ records.assembly[kind] }}</td></tr>
  {% endfor %}
</table>

<h2>Plots</h2>
<div class="grid">
  <div class="card">
    <h3>Records by kind</h3>
    <img src="{{ plots.record_counts }}" alt="record counts">
  </div>
  <div class="card">
    <h3>Support fraction</h3>
    <img src="{{ plots.support_fraction_hist }}" alt="support fraction histogram">
  </div>
</div>

<h2>Outputs</h2>
<ul>
  <li><code>{{ reporting_vcf }}</code> (pileup calls)</li>
  <li><code>{{ assembly_vcf }}</code> (alleles flagged for assembly filtering)</li>
  <li><code>summary.json</code> (machine-readable summary)</li>
</ul>

<hr>
<p class="small">PileupCall {{ version }}</p>
</body>
</html>"""
)


def render_report(
    *,
    outdir: str | Path,
    version: str,
    run: Dict[str, Any],
    plots: Dict[str, str],
) -> Path:
    outdir = Path(outdir)
    outdir.mkdir(parents=True, exist_ok=True)

    html = _REPORT_TEMPLATE.render(
        generated_at=_dt.datetime.now().isoformat(timespec="seconds"),
        version=version,
        bam_path=run.get("bam_path"),
        ref_path=run.get("ref_path"),
        region=run.get("region"),
        config=run.get("config", {}),
        counts=run.get("counts", {}),
        records=run.get("records", {}),
        reporting_vcf=run.get("reporting_vcf"),
        assembly_vcf=run.get("assembly_vcf"),
        plots=plots,
    )

    out_path = outdir / "report.html"
    out_path.write_text(html, encoding="utf-8")
    return out_path
