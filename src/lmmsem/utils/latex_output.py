"""
LaTeX Output Generation
=======================

Fragment-only LaTeX tables (for \\input{}) from the comparison tables, and
the study report document that includes them.

Usage:
    from lmmsem.utils.latex_output import generate_parameter_comparison_latex

    summary = compare_fits(sem, lmm, truth)
    generate_parameter_comparison_latex(summary.parameters, output_dir / 'latex')

Directory Structure:
    output/
    ├── report.tex
    ├── intercept/
    │   ├── latex/
    │   │   ├── parameter_comparison.tex
    │   │   ├── score_agreement.tex
    │   │   ├── recovery.tex
    │   │   └── fit_statistics.tex
    │   └── figures/
    └── intercept_slope/
        └── ...
"""

import re
import shutil
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence

import numpy as np
import pandas as pd

from lmmsem.models.results import FittedResult

FRAGMENT_HEADER = "% Generated automatically - fragment for \\input{}"

LATEX_ESCAPES = {
    "\\": r"\textbackslash{}",
    "_": r"\_",
    "%": r"\%",
    "&": r"\&",
    "#": r"\#",
    "$": r"\$",
    "{": r"\{",
    "}": r"\}",
    "^": r"\^{}",
    "~": r"\~{}",
}
_LATEX_SPECIAL = re.compile("|".join(re.escape(c) for c in LATEX_ESCAPES))


def _escape_latex(text: str) -> str:
    """Escape special LaTeX characters in a single pass."""
    return _LATEX_SPECIAL.sub(lambda m: LATEX_ESCAPES[m.group()], text)


def _fmt(value, digits: int = 4) -> str:
    if value is None or (isinstance(value, float) and np.isnan(value)):
        return "--"
    return f"{value:.{digits}f}"


def _write_fragment(lines: List[str], output_path: Path) -> Path:
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, 'w') as f:
        f.write('\n'.join(lines) + '\n')
    print(f"  LaTeX output: {output_path}")
    return output_path


def _table_lines(caption: str, label: str, columns: str, header: str) -> List[str]:
    return [
        FRAGMENT_HEADER,
        "",
        "\\begin{table}[htbp]",
        "\\centering",
        f"\\caption{{{caption}}}",
        f"\\label{{{label}}}",
        f"\\begin{{tabular}}{{{columns}}}",
        "\\toprule",
        header,
        "\\midrule",
    ]


TABLE_FOOTER = ["\\bottomrule", "\\end{tabular}", "\\end{table}"]


def cleanup_latex_output(output_dir: Path) -> None:
    """
    Remove a previous output directory and recreate it empty.

    Call this at the start of a new run to ensure fresh output.
    """
    output_dir = Path(output_dir)
    if output_dir.exists():
        shutil.rmtree(output_dir)
        print(f"Cleaned up output: {output_dir}")
    output_dir.mkdir(parents=True, exist_ok=True)


# =============================================================================
# SCENARIO FRAGMENTS
# =============================================================================

def generate_parameter_comparison_latex(parameters: pd.DataFrame, output_dir: Path,
                                        scenario: str = '') -> Path:
    """
    Side-by-side SEM / mixed model estimates.

    Args:
        parameters: Output of compare_parameters (two estimate columns,
                    difference, relative_difference)
        output_dir: Directory for the fragment
        scenario: Scenario name used in caption and label
    """
    first, second = parameters.columns[:2]
    lines = _table_lines(
        caption=f"Parameter estimates: {_escape_latex(first)} vs "
                f"{_escape_latex(second)} ({_escape_latex(scenario)})",
        label=f"tab:{scenario}_parameters",
        columns="lrrrr",
        header=f"Parameter & {_escape_latex(first)} & {_escape_latex(second)} "
               f"& Difference & Rel. diff. \\\\",
    )
    for name, row in parameters.iterrows():
        lines.append(
            f"{_escape_latex(str(name))} & {_fmt(row[first])} & {_fmt(row[second])} "
            f"& {_fmt(row['difference'], 5)} & {_fmt(row['relative_difference'], 5)} \\\\"
        )
    lines.extend(TABLE_FOOTER)
    return _write_fragment(lines, Path(output_dir) / "parameter_comparison.tex")


def generate_score_agreement_latex(scores: pd.DataFrame, output_dir: Path,
                                   scenario: str = '', threshold: float = 0.99) -> Path:
    """Per-factor correlation of SEM scores and fixed effect + BLUP."""
    lines = _table_lines(
        caption=f"Agreement of per-unit predictions ({_escape_latex(scenario)})",
        label=f"tab:{scenario}_scores",
        columns="lrrrl",
        header="Factor & $n$ & Correlation & Mean abs. diff. & Status \\\\",
    )
    for factor, row in scores.iterrows():
        status = "OK" if row['correlation'] > threshold else "Below threshold"
        lines.append(
            f"{_escape_latex(str(factor))} & {int(row['n']):,} & {row['correlation']:.5f} "
            f"& {_fmt(row['mean_abs_difference'], 5)} & {status} \\\\"
        )
    lines.extend(TABLE_FOOTER)
    return _write_fragment(lines, Path(output_dir) / "score_agreement.tex")


def generate_recovery_latex(recovery: Mapping[str, pd.DataFrame], output_dir: Path,
                            scenario: str = '') -> Path:
    """
    Parameter recovery against the generative truth, one block per method.

    Args:
        recovery: {model_name: compare_to_truth output}
    """
    lines = _table_lines(
        caption=f"Parameter recovery ({_escape_latex(scenario)})",
        label=f"tab:{scenario}_recovery",
        columns="lrrrr",
        header="Parameter & True & Estimate & Std. Err. & Bias (\\%) \\\\",
    )
    for i, (method, table) in enumerate(recovery.items()):
        if i > 0:
            lines.append("\\midrule")
        lines.append(f"\\multicolumn{{5}}{{l}}{{\\textit{{{_escape_latex(method)}}}}} \\\\")
        for name, row in table.iterrows():
            lines.append(
                f"{_escape_latex(str(name))} & {_fmt(row['true_value'])} & {_fmt(row['estimate'])} "
                f"& {_fmt(row['se'])} & {_fmt(row['bias_pct'], 2)} \\\\"
            )
    lines.extend(TABLE_FOOTER)
    return _write_fragment(lines, Path(output_dir) / "recovery.tex")


def generate_fit_statistics_latex(results: Sequence[FittedResult], output_dir: Path,
                                  scenario: str = '') -> Path:
    """Fit statistics of each result (only those it reports)."""
    lines = _table_lines(
        caption=f"Model fit ({_escape_latex(scenario)})",
        label=f"tab:{scenario}_fit",
        columns="llr",
        header="Model & Statistic & Value \\\\",
    )
    for i, result in enumerate(results):
        if i > 0:
            lines.append("\\midrule")
        label = f"{_escape_latex(result.model_name)} ({_escape_latex(result.backend)})"
        status = "converged" if result.converged else "NOT converged"
        lines.append(f"{label} & Status & {status} \\\\")
        for stat, value in result.fit_statistics.items():
            lines.append(f" & {_escape_latex(stat)} & {_fmt(value, 3)} \\\\")
    lines.extend(TABLE_FOOTER)
    return _write_fragment(lines, Path(output_dir) / "fit_statistics.tex")


def generate_replication_latex(summary: pd.DataFrame, correlations: pd.DataFrame,
                               output_dir: Path, scenario: str = '',
                               n_replications: Optional[int] = None) -> Path:
    """Bias / RMSE / coverage per method and parameter plus score correlation range."""
    caption = f"Replication study ({_escape_latex(scenario)}"
    if n_replications is not None:
        caption += f", $R = {n_replications}$"
    caption += ")"
    lines = _table_lines(
        caption=caption,
        label=f"tab:{scenario}_replication",
        columns="llrrrr",
        header="Method & Parameter & True & Bias & RMSE & Coverage \\\\",
    )
    previous = None
    for _, row in summary.iterrows():
        if previous is not None and row['method'] != previous:
            lines.append("\\midrule")
        previous = row['method']
        lines.append(
            f"{_escape_latex(row['method'])} & {_escape_latex(row['parameter'])} "
            f"& {_fmt(row['true_value'])} & {_fmt(row['bias'])} & {_fmt(row['rmse'])} "
            f"& {_fmt(row['coverage_95'], 3)} \\\\"
        )
    lines.append("\\midrule")
    lines.append("\\multicolumn{6}{l}{\\textit{Score correlation (min / mean)}} \\\\")
    for factor, row in correlations.iterrows():
        lines.append(
            f"{_escape_latex(str(factor))} & & & {_fmt(row['min'], 5)} & {_fmt(row['mean'], 5)} & \\\\"
        )
    lines.extend(TABLE_FOOTER)
    return _write_fragment(lines, Path(output_dir) / "replication.tex")


# =============================================================================
# REPORT DOCUMENT
# =============================================================================

REPORT_PREAMBLE = r"""\documentclass[11pt]{article}
\usepackage[margin=2.5cm]{geometry}
\usepackage{amsmath}
\usepackage{booktabs}
\usepackage{graphicx}
\usepackage{float}
"""

REPORT_INTRODUCTION = r"""\section{Introduction}
A linear mixed model with a random intercept (and optionally a random
slope on time) is a latent growth model: the random effects are latent
factors whose loadings are fixed to $1$ (intercept) and to the time
scores (slope). Writing $\eta_i \sim N(\mu, \Phi)$ for the latent vector
and $y_i = \Lambda \eta_i + \varepsilon_i$ for the $K$ repeated
measures, both approaches fit the same marginal model
\begin{equation}
  y_i \sim N\left(\Lambda \mu,\; \Lambda \Phi \Lambda^\top + \Theta\right).
\end{equation}
Time-specific residual variances $\Theta = \mathrm{diag}(\theta_1, \dots,
\theta_K)$ are free in the SEM; in the mixed model they are expressed as
one residual scale plus per-occasion variance components.

The SEM is fitted to the wide table (one row per unit), the mixed model
to the long table (one row per unit and occasion). The per-unit SEM
latent scores (empirical Bayes) are compared with the mixed model fixed
effect plus predicted random effect (BLUP).
"""


def _figure_block(path: str, caption: str) -> List[str]:
    return [
        "\\begin{figure}[H]",
        "\\centering",
        f"\\includegraphics[width=0.8\\textwidth]{{{path}}}",
        f"\\caption{{{caption}}}",
        "\\end{figure}",
    ]


def generate_report_latex(scenarios: Sequence[Dict], output_dir: Path,
                          title: str = 'Mixed Models as Constrained SEM') -> Path:
    """
    Write the full report document.

    Args:
        scenarios: One dict per scenario with keys
                   'name', 'description', 'n', 'equivalent', 'min_correlation',
                   'fragments' (list of paths relative to output_dir) and
                   'figures' (list of (relative path, caption))
        output_dir: Study output directory (report.tex is written here)
        title: Document title

    Returns:
        Path to report.tex
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    output_path = output_dir / "report.tex"

    lines = [
        REPORT_PREAMBLE,
        f"\\title{{{_escape_latex(title)}}}",
        "\\date{\\today}",
        "\\begin{document}",
        "\\maketitle",
        "",
        REPORT_INTRODUCTION,
        "\\section{Summary}",
        "\\begin{itemize}",
    ]
    for scenario in scenarios:
        verdict = "equivalent" if scenario['equivalent'] else "NOT equivalent"
        lines.append(
            f"\\item \\textbf{{{_escape_latex(scenario['name'])}}} ($n = {scenario['n']:,}$): "
            f"minimum score correlation {scenario['min_correlation']:.5f}, {verdict}."
        )
    lines.append("\\end{itemize}")

    for scenario in scenarios:
        lines.extend(["", f"\\section{{Scenario: {_escape_latex(scenario['name'])}}}"])
        if scenario.get('description'):
            lines.append(_escape_latex(scenario['description']) + ".")
        lines.append("")
        for fragment in scenario.get('fragments', []):
            lines.append(f"\\input{{{Path(fragment).as_posix()}}}")
        for figure, caption in scenario.get('figures', []):
            lines.extend(_figure_block(Path(figure).as_posix(), _escape_latex(caption)))

    lines.extend(["", "\\end{document}"])
    return _write_fragment(lines, output_path)
