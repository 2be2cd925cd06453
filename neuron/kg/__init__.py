"""
Knowledge graph domain models.

Provides the scoped entities (nodes, edges, clusters, suggested edges),
per-scope settings, and the slug and vector helpers shared by every
graph store backend.
"""

from neuron.kg.models import (
    DEFAULT_SCOPE,
    AnalysisStatus,
    Cluster,
    ClusterMembership,
    Edge,
    EdgeCreate,
    EdgeEvidence,
    EdgeSource,
    EdgeUpdate,
    Node,
    NodeCreate,
    NodeUpdate,
    SuggestedEdge,
    SuggestionStatus,
)
from neuron.kg.settings import GraphSettings, GraphSettingsUpdate, default_settings
from neuron.kg.slugs import build_source_aware_slug, slugify

__all__ = [
    "DEFAULT_SCOPE",
    # Models
    "Node",
    "NodeCreate",
    "NodeUpdate",
    "Edge",
    "EdgeCreate",
    "EdgeUpdate",
    "EdgeEvidence",
    "EdgeSource",
    "AnalysisStatus",
    "Cluster",
    "ClusterMembership",
    "SuggestedEdge",
    "SuggestionStatus",
    # Settings
    "GraphSettings",
    "GraphSettingsUpdate",
    "default_settings",
    # Helpers
    "slugify",
    "build_source_aware_slug",
]
