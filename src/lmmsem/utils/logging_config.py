"""
Structured Logging for Model Fitting
====================================

All package loggers live under the ``lmmsem`` namespace. Fitting and
comparison progress goes both to stdout (verbose mode, for interactive
runs) and to the logging system (for log files and --quiet runs).

Usage:
    from lmmsem.utils.logging_config import get_logger, EstimationLogger

    logger = get_logger(__name__)
    logger.info("Starting scenario")

    est_log = EstimationLogger("SEM")
    est_log.start()
    est_log.converged(n_obs=1000, loglik=-5123.4)
"""

import json
import logging
import sys
import time
import warnings
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple

PACKAGE_LOGGER = "lmmsem"

LOG_FORMATS = {
    "standard": "%(asctime)s | %(levelname)-8s | %(message)s",
    "detailed": "%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(message)s",
}
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Chatty third-party loggers kept at WARNING unless DEBUG is requested
LIBRARY_LOGGERS = ("matplotlib", "PIL", "semopy")


# =============================================================================
# LOGGING CONFIGURATION
# =============================================================================

class JsonFormatter(logging.Formatter):
    """One JSON object per record; ``extra={'data': {...}}`` is carried along."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "time": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        data = getattr(record, "data", None)
        if data is not None:
            payload["data"] = data
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def _formatter(format_style: str) -> logging.Formatter:
    if format_style == "json":
        return JsonFormatter()
    return logging.Formatter(LOG_FORMATS.get(format_style, LOG_FORMATS["standard"]),
                             datefmt=DATE_FORMAT)


def setup_logging(
    level: int = logging.INFO,
    log_file: Optional[str] = None,
    format_style: str = "standard"
) -> logging.Logger:
    """
    Configure the package logger.

    Calling it again replaces the handlers of the previous call.

    Args:
        level: Console level (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional file receiving every record at DEBUG level in
                  the detailed format
        format_style: "standard", "detailed" or "json" (console only)

    Returns:
        The ``lmmsem`` logger
    """
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(level)
    console.setFormatter(_formatter(format_style))
    package_logger.addHandler(console)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(_formatter("detailed"))
        package_logger.addHandler(file_handler)

    package_logger.setLevel(logging.DEBUG if log_file else level)
    package_logger.propagate = False

    library_level = logging.DEBUG if level <= logging.DEBUG else logging.WARNING
    for name in LIBRARY_LOGGERS:
        logging.getLogger(name).setLevel(library_level)

    return package_logger


def get_logger(name: str) -> logging.Logger:
    """Logger for a module; names outside the package are nested under it."""
    if name != PACKAGE_LOGGER and not name.startswith(PACKAGE_LOGGER + "."):
        name = f"{PACKAGE_LOGGER}.{name}"
    return logging.getLogger(name)


# =============================================================================
# ESTIMATION LOGGER
# =============================================================================

class EstimationLogger:
    """
    Progress of one model fit.

    Example:
        est_log = EstimationLogger("LMM")
        est_log.start()
        est_log.converged(n_obs=4000, loglik=-8012.2, aic=16040.4)
    """

    def __init__(self, model_name: str, verbose: bool = True):
        self.model_name = model_name
        self.verbose = verbose
        self._started: Optional[float] = None
        self._logger = get_logger(f"{PACKAGE_LOGGER}.fit")

    def _emit(self, level: int, console: str, record: str, **data) -> None:
        if self.verbose:
            print(console)
        self._logger.log(level, f"[{self.model_name}] {record}",
                         extra={"data": data} if data else None)

    @property
    def elapsed(self) -> float:
        if self._started is None:
            return 0.0
        return time.perf_counter() - self._started

    def start(self) -> None:
        self._started = time.perf_counter()
        rule = "=" * 60
        self._emit(logging.INFO, f"\n{rule}\nFitting: {self.model_name}\n{rule}", "fit started")

    def converged(self, n_obs: int, loglik: Optional[float] = None,
                  aic: Optional[float] = None, bic: Optional[float] = None) -> None:
        lines = [f"\n  CONVERGED in {self.elapsed:.1f}s (N = {n_obs:,})"]
        for label, value in (("LL", loglik), ("AIC", aic), ("BIC", bic)):
            if value is not None:
                lines.append(f"  {label}: {value:.2f}")
        self._emit(logging.INFO, "\n".join(lines),
                   f"converged N={n_obs} LL={loglik} in {self.elapsed:.1f}s",
                   n_obs=n_obs, loglik=loglik, aic=aic, bic=bic)

    def not_converged(self, message: str = "") -> None:
        """The optimizer finished without reporting success; results are flagged, not retried."""
        self._emit(logging.WARNING,
                   f"\n  WARNING: no convergence reported after {self.elapsed:.1f}s {message}",
                   f"not converged {message}".rstrip())

    def failed(self, reason: str) -> None:
        self._emit(logging.ERROR, f"\n  FAILED after {self.elapsed:.1f}s: {reason}",
                   f"failed: {reason}")

    def parameters(self, estimates: Dict[str, float],
                   std_errs: Optional[Dict[str, float]] = None) -> None:
        std_errs = std_errs or {}
        lines = ["\n  Parameters:"]
        for name, value in estimates.items():
            se = std_errs.get(name)
            se_text = f"(SE: {se:6.4f})" if se is not None else "(SE: --)"
            lines.append(f"    {name:24s}: {value:9.4f} {se_text}")
        self._emit(logging.DEBUG, "\n".join(lines), f"{len(estimates)} parameters",
                   estimates=dict(estimates))


# =============================================================================
# COMPARISON LOGGER
# =============================================================================

class ComparisonLogger:
    """Side-by-side SEM / mixed model output."""

    def __init__(self, verbose: bool = True):
        self.verbose = verbose
        self._logger = get_logger(f"{PACKAGE_LOGGER}.comparison")

    def header(self, title: str = "MODEL COMPARISON") -> None:
        if self.verbose:
            print(f"\n{'#' * 60}\n# {title}\n{'#' * 60}")
        self._logger.info(f"Comparing {title}")

    def parameter(self, name: str, first: float, second: float,
                  labels: Tuple[str, str] = ("SEM", "LMM")) -> None:
        if self.verbose:
            print(f"  {name:24s} {labels[0]}={first:9.4f}  {labels[1]}={second:9.4f}  "
                  f"diff={first - second:+.5f}")
        self._logger.debug(f"{name}: {labels[0]}={first:.6f} {labels[1]}={second:.6f}")

    def score_correlation(self, factor: str, correlation: float,
                          threshold: float = 0.99) -> None:
        ok = correlation > threshold
        if self.verbose:
            print(f"  r({factor}) = {correlation:.5f} [{'OK' if ok else 'LOW'}]")
        if ok:
            self._logger.info(f"Score correlation {factor}: r={correlation:.5f}")
        else:
            self._logger.warning(f"Score correlation {factor} below {threshold}: "
                                 f"r={correlation:.5f}")


# =============================================================================
# WARNING CONFIGURATION
# =============================================================================

# Expected during fitting; convergence itself is reported through FittedResult.converged
EXPECTED_WARNINGS = (
    ".*on the boundary.*",            # MixedLM: a variance component at zero
    ".*Random effects covariance is singular.*",
    ".*overflow.*",
    ".*invalid value.*",
)


def configure_warnings(debug_mode: bool = False) -> None:
    """
    Silence expected optimizer warnings, or show everything in debug mode.

    Suppressed (debug_mode=False): FutureWarning / DeprecationWarning from
    the fitting libraries and the messages in EXPECTED_WARNINGS.
    """
    if debug_mode:
        warnings.simplefilter('default')
        get_logger(PACKAGE_LOGGER).debug("Debug mode: all warnings enabled")
        return

    warnings.filterwarnings('ignore', category=FutureWarning)
    warnings.filterwarnings('ignore', category=DeprecationWarning, module='semopy')
    warnings.filterwarnings('ignore', category=DeprecationWarning, module='statsmodels')
    for pattern in EXPECTED_WARNINGS:
        warnings.filterwarnings('ignore', message=pattern)
