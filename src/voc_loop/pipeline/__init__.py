"""Clustering and verification stage implementations."""

from voc_loop.pipeline.clustering import (
    ClusteringOutcome,
    LLMClusteringCapability,
    ProposedGroup,
    SemanticClusteringCapability,
    build_cluster_items,
    cluster_feedback,
)
from voc_loop.pipeline.periods import (
    EligibilityFilter,
    Period,
    PeriodError,
    month_period,
    range_period,
    resolve_period,
    week_period,
)
from voc_loop.pipeline.reconcile import ReconciledGeneration, reconcile_coverage
from voc_loop.pipeline.run_pipeline import (
    BatchResult,
    ClusteringRunResult,
    UnitOutcome,
    generate_run_id,
    run_all_clustering,
    run_all_verifications,
    run_clustering_unit,
    run_verification_unit,
)
from voc_loop.pipeline.summary import build_cluster_summary, build_verification_summary
from voc_loop.pipeline.verification import (
    classify_change,
    compute_change_percent,
    exact_change_percent,
    run_verification,
)
from voc_loop.pipeline.verification_configs import (
    create_verification_config,
    get_verification_history,
    quick_create_verification_config,
)

__all__ = [
    "BatchResult",
    "ClusteringOutcome",
    "ClusteringRunResult",
    "EligibilityFilter",
    "LLMClusteringCapability",
    "Period",
    "PeriodError",
    "ProposedGroup",
    "ReconciledGeneration",
    "SemanticClusteringCapability",
    "UnitOutcome",
    "build_cluster_items",
    "build_cluster_summary",
    "build_verification_summary",
    "classify_change",
    "cluster_feedback",
    "compute_change_percent",
    "create_verification_config",
    "exact_change_percent",
    "generate_run_id",
    "get_verification_history",
    "month_period",
    "quick_create_verification_config",
    "range_period",
    "reconcile_coverage",
    "resolve_period",
    "run_all_clustering",
    "run_all_verifications",
    "run_clustering_unit",
    "run_verification",
    "run_verification_unit",
    "week_period",
]
