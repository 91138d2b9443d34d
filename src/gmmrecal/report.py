from __future__ import annotations

import datetime as _dt
import logging
from pathlib import Path
from typing import Any, Dict, Sequence

from jinja2 import Template

from .models import Tranche

logger = logging.getLogger(__name__)


_REPORT_TEMPLATE = Template(
    """<!doctype html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <title>gmmrecal Report</title>
  <style>
    body { font-family: Arial, Helvetica, sans-serif; margin: 24px; }
    code, pre { background: #f6f8fa; padding: 2px 4px; border-radius: 4px; }
    pre { padding: 12px; overflow-x: auto; }
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

<h1>gmmrecal Report</h1>
<p class="small">Generated: {{ generated_at }}</p>

<h2>Run summary</h2>
<div class="grid">
  <div class="card">
    <h3>Inputs</h3>
    <table>
      <tr><th>VCF</th><td><code>{{ vcf_path }}</code></td></tr>
      <tr><th>Mode</th><td>{{ config.mode }}</td></tr>
      <tr><th>Annotations</th><td>{{ config.annotations | join(", ") }}</td></tr>
      <tr><th>Allele-specific</th><td>{{ use_allele_specific }}</td></tr>
      {% for res in resources %}
      <tr><th>Resource {{ res.name }}</th><td><code>{{ res.path }}</code>
        (known={{ res.known }}, training={{ res.training }}, truth={{ res.truth }}, anti_training={{ res.anti_training }})</td></tr>
      {% endfor %}
    </table>
  </div>
  <div class="card">
    <h3>Model</h3>
    <table>
      <tr><th>Max Gaussians (positive / negative)</th><td>{{ config.max_gaussians }} / {{ config.max_negative_gaussians }}</td></tr>
      <tr><th>Max EM iterations</th><td>{{ config.max_iterations }}</td></tr>
      <tr><th>Prior pseudo-count</th><td>{{ config.prior_counts }}</td></tr>
      <tr><th>Seed</th><td>{{ config.seed }}</td></tr>
    </table>
  </div>
</div>

<h2>Training data</h2>
<table>
  <tr><th>Records scored</th><td>{{ counts.records }}</td></tr>
  <tr><th>Positive training</th><td>{{ counts.positive_training }}</td></tr>
  <tr><th>Negative training</th><td>{{ counts.negative_training }}</td></tr>
  <tr><th>Outside std threshold</th><td>{{ counts.failing_std_threshold }}</td></tr>
  <tr><th>Truth sites</th><td>{{ counts.truth_sites }}</td></tr>
  <tr><th>Known sites</th><td>{{ counts.known }}</td></tr>
</table>

<h2>Models</h2>
<table>
  <tr><th>Model</th><th>Clusters</th><th>Iterations</th><th>Converged</th><th>Final objective</th></tr>
  {% for name, m in models.items() %}
  <tr><td>{{ name }}</td><td>{{ m.n_clusters }}</td><td>{{ m.iterations }}</td><td>{{ m.converged }}</td>
    <td>{{ "%.3f"|format(m.final_log_likelihood) if m.final_log_likelihood is not none else "NA" }}</td></tr>
  {% endfor %}
</table>

<h2>Tranches</h2>
<table>
  <tr><th>Name</th><th>Target sensitivity</th><th>min VQSLOD</th><th>Known</th><th>Novel</th>
    <th>Known Ti/Tv</th><th>Novel Ti/Tv</th><th>Truth sensitivity</th></tr>
  {% for t in tranches %}
  <tr><td><code>{{ t.name }}</code></td><td>{{ "%.2f"|format(t.target_sensitivity) }}</td>
    <td>{{ "%.4f"|format(t.min_vqslod) }}</td><td>{{ t.num_known }}</td><td>{{ t.num_novel }}</td>
    <td>{{ "%.3f"|format(t.known_titv) }}</td><td>{{ "%.3f"|format(t.novel_titv) }}</td>
    <td>{{ "%.4f"|format(t.truth_sensitivity) }}</td></tr>
  {% endfor %}
</table>

<h2>Plots</h2>

<div class="grid">
  <div class="card">
    <h3>VQSLOD distribution</h3>
    <img src="{{ plots.lod_hist }}" alt="VQSLOD histogram">
  </div>
  <div class="card">
    <h3>Calls per tranche</h3>
    <img src="{{ plots.tranche_counts }}" alt="tranche counts">
  </div>
</div>

<div class="grid" style="margin-top:16px;">
  <div class="card">
    <h3>EM convergence</h3>
    <img src="{{ plots.em_traces }}" alt="EM traces">
  </div>
</div>

<h2>Outputs</h2>
<ul>
  <li><code>{{ recal_vcf }}</code> (per-variant VQSLOD and culprit)</li>
  <li><code>{{ tranches_csv }}</code> (tranche cutoffs for <code>gmmrecal apply</code>)</li>
  <li><code>summary.json</code> (machine-readable summary)</li>
</ul>

<h2>Interpretation notes</h2>
<ul>
  <li>VQSLOD is log10 p(x | good model) minus log10 p(x | bad model); higher is better.</li>
  <li>A tranche at target T keeps every call whose VQSLOD is at least the cutoff at which T% of truth sites are retained.</li>
  <li>The culprit is the annotation whose one-dimensional marginal most favours the bad model; it is a diagnostic label only.</li>
</ul>

<hr>
<p class="small">gmmrecal {{ version }}</p>
</body>
</html>"""
)


def render_report(
    *,
    outdir: str | Path,
    version: str,
    run: Dict[str, Any],
    tranches: Sequence[Tranche],
    vcf_path: str,
    plots: Dict[str, str],
) -> Path:
    outdir = Path(outdir)
    outdir.mkdir(parents=True, exist_ok=True)

    html = _REPORT_TEMPLATE.render(
        generated_at=_dt.datetime.now().isoformat(timespec="seconds"),
        version=version,
        vcf_path=vcf_path,
        config=run.get("config", {}),
        use_allele_specific=run.get("use_allele_specific", False),
        resources=run.get("resources", []),
        counts=run.get("counts", {}),
        models=run.get("models", {}),
        tranches=sorted(tranches, key=lambda t: t.target_sensitivity),
        recal_vcf=run.get("recal_vcf"),
        tranches_csv=run.get("tranches_csv"),
        plots=plots,
    )

    out_path = outdir / "report.html"
    out_path.write_text(html, encoding="utf-8")
    logger.debug("Report rendered with %d tranches", len(tranches))
    return out_path
