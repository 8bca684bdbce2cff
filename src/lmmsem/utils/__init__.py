"""Utility modules: logging, configuration, LaTeX output, visualization."""

from .logging_config import (
    setup_logging, get_logger, configure_warnings,
    EstimationLogger, ComparisonLogger,
)
from .config_schema import ValidationResult, validate_config, load_config
