"""
Study Configuration Schema
==========================

Defines and validates the JSON configuration of the equivalence study.

Configuration Structure:
------------------------
{
    "study": {
        "name": str,                 # Report title
        "output_dir": str,           # Default output directory
        "threshold": float           # Minimum score correlation (default 0.99)
    },
    "scenarios": {
        "<scenario_name>": {
            "type": "intercept" | "intercept_slope",
            "n": int,                # Number of simulated units
            "seed": int,             # Random seed
            "description": str,

            # intercept
            "mean": float,
            "sd": float,

            # intercept_slope
            "means": [float, float],
            "sds": [float, float],
            "correlation": float,
            "time_scores": [float],  # Optional, default 0..K-1

            "residual_sd": [float],  # One per item (K = len)
            "residual_structure": "heterogeneous" | "homogeneous",
            "items": [str]           # Optional item names, default y1..yK
        }
    },
    "replication": {                 # Optional
        "n_replications": int,
        "seed": int
    }
}
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Union

from lmmsem.utils.logging_config import get_logger

logger = get_logger(__name__)

VALID_SCENARIO_TYPES = ['intercept', 'intercept_slope']
VALID_RESIDUAL_STRUCTURES = ['heterogeneous', 'homogeneous']
DEFAULT_THRESHOLD = 0.99
DEFAULT_OUTPUT_DIR = 'output'


# =============================================================================
# SCHEMA VALIDATION
# =============================================================================

@dataclass
class ValidationResult:
    """Result of configuration validation."""
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


def _validate_scenario(name: str, scenario: Dict[str, Any],
                       errors: List[str], warnings_list: List[str]) -> None:
    prefix = f"scenarios.{name}"
    scenario_type = scenario.get('type', 'intercept')
    if scenario_type not in VALID_SCENARIO_TYPES:
        errors.append(f"{prefix}.type: invalid type '{scenario_type}'. "
                      f"Must be one of {VALID_SCENARIO_TYPES}")
        return

    n = scenario.get('n')
    if not isinstance(n, int) or isinstance(n, bool) or n <= 0:
        errors.append(f"{prefix}.n must be a positive integer")
    if 'seed' not in scenario:
        warnings_list.append(f"{prefix}.seed not specified, results will not be reproducible")

    residual_sd = scenario.get('residual_sd')
    if not isinstance(residual_sd, list) or len(residual_sd) < 2:
        errors.append(f"{prefix}.residual_sd must be a list with at least 2 values")
        residual_sd = []
    elif any(float(s) < 0 for s in residual_sd):
        errors.append(f"{prefix}.residual_sd values must be >= 0")

    if scenario_type == 'intercept':
        for key in ('mean', 'sd'):
            if key not in scenario:
                errors.append(f"{prefix}.{key} is required for intercept scenarios")
        if 'sd' in scenario and float(scenario['sd']) < 0:
            errors.append(f"{prefix}.sd must be >= 0")
    else:
        for key in ('means', 'sds'):
            value = scenario.get(key)
            if not isinstance(value, list) or len(value) != 2:
                errors.append(f"{prefix}.{key} must be a list of 2 values")
        corr = scenario.get('correlation', 0.0)
        if not -1.0 <= float(corr) <= 1.0:
            errors.append(f"{prefix}.correlation must lie in [-1, 1]")
        time_scores = scenario.get('time_scores')
        if time_scores is not None and len(time_scores) != len(residual_sd):
            errors.append(f"{prefix}.time_scores must have one value per residual_sd")

    items = scenario.get('items')
    if items is not None:
        if len(items) != len(residual_sd):
            errors.append(f"{prefix}.items must have one name per residual_sd")
        if len(set(items)) != len(items):
            errors.append(f"{prefix}.items must be unique")

    structure = scenario.get('residual_structure', 'heterogeneous')
    if structure not in VALID_RESIDUAL_STRUCTURES:
        errors.append(f"{prefix}.residual_structure: invalid value '{structure}'. "
                      f"Must be one of {VALID_RESIDUAL_STRUCTURES}")
    elif structure == 'homogeneous' and len(set(map(float, residual_sd))) > 1:
        warnings_list.append(f"{prefix}: homogeneous analysis model on data simulated "
                             f"with unequal residual_sd (misspecified)")


def validate_config(config: Dict) -> ValidationResult:
    """
    Validate configuration against schema.

    Args:
        config: Configuration dictionary

    Returns:
        ValidationResult with validity status and any errors/warnings
    """
    errors: List[str] = []
    warnings_list: List[str] = []

    scenarios = config.get('scenarios')
    if not isinstance(scenarios, dict) or not scenarios:
        errors.append("Missing required key: scenarios (non-empty object)")
        return ValidationResult(False, errors, warnings_list)

    study = config.get('study', {})
    if 'name' not in study:
        warnings_list.append("study.name not specified, using default title")
    threshold = study.get('threshold', DEFAULT_THRESHOLD)
    if not 0.0 < float(threshold) <= 1.0:
        errors.append("study.threshold must lie in (0, 1]")

    for name, scenario in scenarios.items():
        _validate_scenario(name, scenario, errors, warnings_list)

    replication = config.get('replication')
    if replication is not None:
        n_rep = replication.get('n_replications', 0)
        if not isinstance(n_rep, int) or n_rep < 0:
            errors.append("replication.n_replications must be a non-negative integer")

    return ValidationResult(len(errors) == 0, errors, warnings_list)


def load_config(path: Union[str, Path]) -> Dict[str, Any]:
    """
    Load and validate a study configuration file.

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If the configuration is invalid
    """
    path = Path(path)
    with open(path) as f:
        config = json.load(f)

    result = validate_config(config)
    for warning in result.warnings:
        logger.warning(f"Config {path.name}: {warning}")
    if not result.is_valid:
        raise ValueError(
            f"Invalid configuration {path}:\n  " + "\n  ".join(result.errors)
        )

    config.setdefault('study', {})
    config['study'].setdefault('name', 'Mixed Models as Constrained SEM')
    config['study'].setdefault('output_dir', DEFAULT_OUTPUT_DIR)
    config['study'].setdefault('threshold', DEFAULT_THRESHOLD)
    return config
