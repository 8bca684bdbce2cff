"""Replication (Monte Carlo) checks of the SEM / mixed model equivalence."""

from .replication import (
    ReplicationStudy, ReplicationResult, run_replication_study,
    compute_bias, compute_rmse, compute_coverage,
)
