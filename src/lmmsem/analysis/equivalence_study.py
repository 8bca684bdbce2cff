"""
Equivalence Study
=================

Runs the full pipeline for each configured scenario:

    simulate (wide) -> reshape (long) -> fit SEM (wide) + fit LMM (long)
    -> compare -> write CSV / LaTeX / figures

and writes the report document that ties the scenarios together.

Output layout:
    output/
    ├── report.tex
    └── <scenario>/
        ├── data/        wide.csv, long.csv
        ├── tables/      parameter_comparison.csv, score_agreement.csv, ...
        ├── latex/       fragments for \\input{}
        └── figures/     PNG (dpi=300), path_diagram.dot
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import pandas as pd

from lmmsem.estimation.comparison import EquivalenceSummary, compare_fits
from lmmsem.models.mixed_model import fit_lmm
from lmmsem.models.results import FittedResult
from lmmsem.models.sem_model import fit_sem
from lmmsem.models.specification import GrowthModelSpec
from lmmsem.simulation.latent_simulator import (
    LatentGrowthSimulator, SimulatedData, empirical_moments, latent_spec_from_config,
)
from lmmsem.simulation.reshape import wide_to_long
from lmmsem.utils import latex_output
from lmmsem.utils.config_schema import DEFAULT_THRESHOLD
from lmmsem.utils.logging_config import get_logger
from lmmsem.validation.replication import ReplicationResult, ReplicationStudy

logger = get_logger(__name__)


@dataclass
class ScenarioResult:
    """Everything produced for one scenario."""
    name: str
    config: Dict[str, Any]
    data: SimulatedData
    long: pd.DataFrame
    sem: FittedResult
    lmm: FittedResult
    summary: EquivalenceSummary
    moments: pd.DataFrame
    replication: Optional[ReplicationResult] = None
    fragments: List[Path] = field(default_factory=list)
    figures: List[tuple] = field(default_factory=list)

    @property
    def equivalent(self) -> bool:
        return self.summary.equivalent

    def scores_table(self) -> pd.DataFrame:
        """Per-unit predictions of both models (and the true latent scores) side by side."""
        frames = {
            'true': self.data.latent,
            self.sem.model_name: self.sem.scores,
            self.lmm.model_name: self.lmm.scores,
        }
        return pd.concat(frames, axis=1)

    def report_entry(self, output_dir: Path) -> Dict[str, Any]:
        output_dir = Path(output_dir)
        return {
            'name': self.name,
            'description': self.config.get('description', ''),
            'n': self.data.n_units,
            'equivalent': self.equivalent,
            'min_correlation': self.summary.min_correlation,
            'fragments': [p.relative_to(output_dir) for p in self.fragments],
            'figures': [(p.relative_to(output_dir), caption) for p, caption in self.figures],
        }


# =============================================================================
# SCENARIO
# =============================================================================

def run_scenario(name: str,
                 scenario: Dict[str, Any],
                 threshold: float = DEFAULT_THRESHOLD,
                 n_replications: int = 0,
                 replication_seed: int = 100,
                 verbose: bool = True) -> ScenarioResult:
    """
    Simulate, fit and compare one scenario (no files written).

    Args:
        name: Scenario name
        scenario: Scenario configuration block
        threshold: Minimum score correlation for equivalence
        n_replications: Additional replications (0 = single draw only)
        replication_seed: Base seed of the replications
        verbose: Print progress

    Returns:
        ScenarioResult
    """
    if verbose:
        print("\n" + "=" * 80)
        print(f"SCENARIO: {name}")
        print("=" * 80)
        if scenario.get('description'):
            print(scenario['description'])

    spec = latent_spec_from_config(scenario)
    residual_structure = scenario.get('residual_structure', 'heterogeneous')
    model_spec = GrowthModelSpec.from_latent_spec(spec, residual_structure)

    data = LatentGrowthSimulator(spec, seed=scenario.get('seed')).simulate(int(scenario['n']))
    long = wide_to_long(data.wide, time_scores=spec.time_scores)
    logger.info(f"{name}: simulated n={data.n_units}, K={spec.n_items}, long rows={len(long)}")

    moments = empirical_moments(data.wide, spec)
    if verbose:
        print("\nItem variances (sample vs implied):")
        print(moments.to_string(float_format=lambda v: f"{v:.4f}"))

    sem = fit_sem(data.wide, model_spec, model_name='SEM', verbose=verbose)
    lmm = fit_lmm(long, model_spec, model_name='LMM', verbose=verbose)

    summary = compare_fits(sem, lmm, truth=spec.true_parameters(),
                           threshold=threshold, verbose=verbose)

    replication = None
    if n_replications > 0:
        study = ReplicationStudy(spec, n_units=int(scenario['n']),
                                 n_replications=n_replications, seed=replication_seed,
                                 residual_structure=residual_structure, verbose=verbose)
        replication = study.run()

    return ScenarioResult(name=name, config=dict(scenario), data=data, long=long,
                          sem=sem, lmm=lmm, summary=summary, moments=moments,
                          replication=replication)


def write_scenario_outputs(result: ScenarioResult, output_dir: Path,
                           make_plots: bool = True) -> Path:
    """
    Write CSV tables, LaTeX fragments and figures of one scenario.

    Returns:
        Scenario output directory
    """
    scenario_dir = Path(output_dir) / result.name
    data_dir = scenario_dir / "data"
    tables_dir = scenario_dir / "tables"
    latex_dir = scenario_dir / "latex"
    for directory in (data_dir, tables_dir, latex_dir):
        directory.mkdir(parents=True, exist_ok=True)

    result.data.wide.to_csv(data_dir / "wide.csv")
    result.long.to_csv(data_dir / "long.csv", index=False)

    summary = result.summary
    summary.parameters.to_csv(tables_dir / "parameter_comparison.csv")
    summary.scores.to_csv(tables_dir / "score_agreement.csv")
    result.moments.to_csv(tables_dir / "item_moments.csv")
    result.scores_table().to_csv(tables_dir / "unit_scores.csv")
    for method, table in summary.recovery.items():
        table.to_csv(tables_dir / f"recovery_{method}.csv")
    fit_rows = {r.model_name: pd.Series(r.fit_statistics) for r in (result.sem, result.lmm)}
    pd.DataFrame(fit_rows).to_csv(tables_dir / "fit_statistics.csv")

    fragments = [
        latex_output.generate_parameter_comparison_latex(summary.parameters, latex_dir, result.name),
        latex_output.generate_score_agreement_latex(summary.scores, latex_dir, result.name,
                                                    threshold=summary.threshold),
    ]
    if summary.recovery:
        fragments.append(latex_output.generate_recovery_latex(summary.recovery, latex_dir,
                                                              result.name))
    fragments.append(latex_output.generate_fit_statistics_latex([result.sem, result.lmm],
                                                                latex_dir, result.name))

    if result.replication is not None:
        rep_summary = result.replication.summary_table()
        rep_corr = result.replication.correlation_summary()
        rep_summary.to_csv(tables_dir / "replication_summary.csv", index=False)
        result.replication.score_correlations.to_csv(tables_dir / "replication_correlations.csv",
                                                     index_label='replication')
        fragments.append(latex_output.generate_replication_latex(
            rep_summary, rep_corr, latex_dir, result.name,
            n_replications=result.replication.n_replications,
        ))
    result.fragments = fragments

    if make_plots:
        result.figures = _write_figures(result, scenario_dir / "figures", summary.threshold)

    logger.info(f"{result.name}: outputs written to {scenario_dir}")
    return scenario_dir


def _write_figures(result: ScenarioResult, figures_dir: Path, threshold: float) -> List[tuple]:
    from lmmsem.utils import visualization

    figures = []
    path = figures_dir / "score_agreement.png"
    visualization.plot_score_agreement(result.sem, result.lmm, save_path=path)
    figures.append((path, f"{result.name}: SEM latent scores vs LMM fixed effect + BLUP"))

    path = figures_dir / "variance_components.png"
    visualization.plot_variance_components([result.sem, result.lmm],
                                           truth=result.data.spec.true_parameters(),
                                           title=f"Variance components ({result.name})",
                                           save_path=path)
    figures.append((path, f"{result.name}: variance components, truth vs estimates"))

    path = figures_dir / "item_distributions.png"
    visualization.plot_item_distributions(result.data.wide, result.data.spec, save_path=path)
    figures.append((path, f"{result.name}: item distributions with implied normal density"))

    path = figures_dir / "path_diagram.png"
    if visualization.plot_path_diagram(result.sem, path) is not None:
        figures.append((path, f"{result.name}: SEM path diagram with estimates"))

    if result.replication is not None:
        path = figures_dir / "replication_correlations.png"
        visualization.plot_replication_correlations(result.replication.score_correlations,
                                                    threshold=threshold, save_path=path)
        figures.append((path, f"{result.name}: score correlation across replications"))

    visualization.close_all()
    return figures


# =============================================================================
# STUDY
# =============================================================================

def run_study(config: Dict[str, Any],
              output_dir: Optional[Path] = None,
              scenarios: Optional[Sequence[str]] = None,
              n_replications: Optional[int] = None,
              make_plots: bool = True,
              cleanup: bool = True,
              verbose: bool = True) -> Dict[str, ScenarioResult]:
    """
    Run every (or the selected) scenario and write the report.

    Args:
        config: Validated study configuration (see config_schema)
        output_dir: Output directory (default: study.output_dir)
        scenarios: Scenario names to run (default: all, in config order)
        n_replications: Override replication.n_replications
        make_plots: Write figures
        cleanup: Remove previous output first
        verbose: Print progress

    Returns:
        {scenario name: ScenarioResult}

    Raises:
        KeyError: If a requested scenario is not configured
    """
    study_cfg = config.get('study', {})
    output_dir = Path(output_dir or study_cfg.get('output_dir', 'output'))
    threshold = float(study_cfg.get('threshold', DEFAULT_THRESHOLD))
    replication_cfg = config.get('replication', {})
    if n_replications is None:
        n_replications = int(replication_cfg.get('n_replications', 0))
    replication_seed = int(replication_cfg.get('seed', 100))

    configured = config['scenarios']
    names = list(scenarios) if scenarios else list(configured)
    unknown = [n for n in names if n not in configured]
    if unknown:
        raise KeyError(f"Unknown scenario(s) {unknown}. Available: {list(configured)}")

    if cleanup:
        latex_output.cleanup_latex_output(output_dir)
    else:
        output_dir.mkdir(parents=True, exist_ok=True)
    if verbose:
        print(f"Output directory: {output_dir.absolute()}")

    results: Dict[str, ScenarioResult] = {}
    for name in names:
        result = run_scenario(name, configured[name], threshold=threshold,
                              n_replications=n_replications,
                              replication_seed=replication_seed, verbose=verbose)
        write_scenario_outputs(result, output_dir, make_plots=make_plots)
        results[name] = result

    latex_output.generate_report_latex(
        [r.report_entry(output_dir) for r in results.values()],
        output_dir,
        title=study_cfg.get('name', 'Mixed Models as Constrained SEM'),
    )

    overview = study_overview(results)
    overview.to_csv(output_dir / "study_overview.csv", index=False)
    if verbose:
        print("\n" + "=" * 80)
        print("STUDY SUMMARY")
        print("=" * 80)
        print(overview.to_string(index=False))
        print(f"\nResults saved to: {output_dir}")

    return results


def study_overview(results: Dict[str, ScenarioResult]) -> pd.DataFrame:
    """One row per scenario: size, convergence, parameter gap and score correlation."""
    rows = []
    for name, result in results.items():
        rows.append({
            'scenario': name,
            'n': result.data.n_units,
            'items': result.data.spec.n_items,
            'factors': result.data.spec.n_factors,
            'sem_converged': result.sem.converged,
            'lmm_converged': result.lmm.converged,
            'max_abs_param_diff': result.summary.max_abs_difference,
            'min_score_correlation': result.summary.min_correlation,
            'equivalent': result.equivalent,
        })
    return pd.DataFrame(rows)
