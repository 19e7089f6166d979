"""Clustering of structurally similar generated trees into templates."""

from depstage.cluster.clustering import (
    EXPR_ADAPTER,
    JSON_ADAPTER,
    Cluster,
    DataclassTreeAdapter,
    JsonTreeAdapter,
    Specialization,
    TreeAdapter,
    apply_template,
    cluster,
    compare,
    signature,
)

__all__ = [
    "EXPR_ADAPTER",
    "JSON_ADAPTER",
    "Cluster",
    "DataclassTreeAdapter",
    "JsonTreeAdapter",
    "Specialization",
    "TreeAdapter",
    "apply_template",
    "cluster",
    "compare",
    "signature",
]
