from pathlib import Path
from datetime import datetime
import html
import json

import numpy as np

from .io_utils import to_jsonable


# ======================================================================
# Public API
# ======================================================================

def collect_run_summary(*, cfg, version: str, results) -> dict:
    """Plain-dict summary of a differential run (inputs, QC signals, contrasts)."""
    fit = results.fit
    reasons = {}
    for r in fit.failure_reason:
        if r is not None:
            reasons[r] = reasons.get(r, 0) + 1
    n_feat = len(fit.feature_ids)

    contrasts = []
    for name, res in results.results.items():
        entry = res.summary()
        written = results.written.get(f"DE:{name}")
        entry["empty"] = res.is_empty
        entry["file"] = str(written) if written is not None else None
        contrasts.append(entry)

    disp = results.dispersion
    return {
        "version": version,
        "timestamp": datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
        "parameters": cfg.model_dump(mode="json"),
        "samples": results.samples.to_frame().reset_index().to_dict(orient="records"),
        "design": {
            "coefficients": list(results.design.coef_names),
            "df_residual": results.design.df_residual,
        },
        "features": {
            "n_merged": results.merged.n_features,
            "n_after_filter": results.filtered.n_features,
            "n_unavailable": fit.n_unavailable,
            "fraction_unavailable": (fit.n_unavailable / n_feat) if n_feat else 0.0,
            "unavailable_reasons": reasons,
        },
        "normalization": {
            s: float(f) for s, f in zip(results.samples.ids, results.norm_factors)
        },
        "dispersion": {
            "common": float(disp.common),
            "prior_df": float(disp.prior_df),
            "span": float(disp.span),
            "median_tagwise": float(np.median(disp.tagwise)) if len(disp.tagwise) else None,
        },
        "ql": {"df_prior": float(fit.df_prior), "df_residual": int(fit.df_residual)},
        "contrasts": contrasts,
    }


def write_run_summary(out_dir: Path, *, cfg, version: str, results) -> Path:
    """
    Write run_summary.json (and a small HTML table of it) into ``out_dir``.

    Output:
      <out_dir>/run_summary.json
      <out_dir>/run_summary.html
    """
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    summary = collect_run_summary(cfg=cfg, version=version, results=results)

    out_json = out_dir / "run_summary.json"
    with open(out_json, "w") as fh:
        json.dump(summary, fh, indent=2, default=to_jsonable)

    (out_dir / "run_summary.html").write_text(render_summary_html(summary), encoding="utf-8")
    return out_json


def render_summary_html(summary: dict) -> str:
    rows = "\n".join(
        "<tr>"
        f"<td>{html.escape(str(c['contrast']))}</td>"
        f"<td>{c['n_tested']}</td>"
        f"<td>{c['n_up']}</td>"
        f"<td>{c['n_down']}</td>"
        f"<td>{'no significant features' if c['empty'] else html.escape(str(c['file']))}</td>"
        "</tr>"
        for c in summary["contrasts"]
    )
    feats = summary["features"]
    params = json.dumps(summary["parameters"], indent=2, default=str)

    return f"""<!DOCTYPE html>
<html>
<head>
<meta charset="utf-8">
<title>cagediff run summary</title>
<style>
  body {{ font-family: sans-serif; margin: 2rem; }}
  table {{ border-collapse: collapse; }}
  td, th {{ border: 1px solid #ccc; padding: 0.3rem 0.6rem; }}
  .meta {{ white-space: pre; font-family: monospace; color: #555; }}
</style>
</head>
<body>
<h1>cagediff run summary</h1>
<div class="meta">
Version:   {html.escape(str(summary['version']))}
Timestamp: {html.escape(str(summary['timestamp']))}
</div>

<h2>Features</h2>
<p>{feats['n_merged']} merged clusters, {feats['n_after_filter']} after filtering,
{feats['n_unavailable']} unavailable ({100.0 * feats['fraction_unavailable']:.1f}%).</p>

<h2>Contrasts</h2>
<table>
<tr><th>contrast</th><th>tested</th><th>up</th><th>down</th><th>table</th></tr>
{rows}
</table>

<h2>Parameters</h2>
<div class="meta">{html.escape(params)}</div>
</body>
</html>
"""
