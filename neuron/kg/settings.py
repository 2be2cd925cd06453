"""
Per-scope graph settings.

Settings are stored by every GraphStore backend as one document per
scope. ``apply_settings_update`` and ``reset_settings_sections`` are the
only merge rules, shared by all backends.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

SETTINGS_SECTIONS = (
    "visualization",
    "analysis",
    "node_types",
    "domains",
    "relationship_types",
)


class InstanceSettings(BaseModel):
    """Identity of this graph instance."""

    name: str = "default"
    version: str = "0.1.0"
    repo_name: str = "neuron-graph"


class VisualizationSettings(BaseModel):
    """Display hints consumed by graph viewers."""

    domain_colors: dict[str, str] = Field(default_factory=dict)
    default_domain_color: str = "#c0c5ff"
    edge_color: str = "#4d4d55"
    edge_active_color: str = "#c6d4ff"
    background_color: str = "#020314"
    max_visible_labels: int = 50
    performance_mode: Literal["auto", "normal", "degraded", "fallback"] = "auto"
    node_count_threshold: int = 120
    enable_animations: bool = True


class AnalysisSettings(BaseModel):
    """Enrichment pipeline defaults stored alongside the graph."""

    embedding_model: str = "text-embedding-3-small"
    embedding_dimensions: int = 1536
    embedding_batch_size: int = 20
    embedding_cache_ttl: int = 86400
    clustering_algorithm: Literal["kmeans", "dbscan"] = "kmeans"
    default_cluster_count: int = 8
    min_cluster_size: int = 3
    cluster_similarity_threshold: float = 0.75
    relationship_inference_model: str = "gpt-4o-mini"
    relationship_min_confidence: float = 0.7
    relationship_max_per_node: int = 10
    relationship_governance_enabled: bool = True
    relationship_auto_approve_enabled: bool = True
    relationship_auto_approve_min_confidence: float = 0.7
    openai_rate_limit: int = 60
    max_concurrent_analysis: int = 5


class NodeTypeConfig(BaseModel):
    type: str
    label: str
    description: str | None = None
    default_domain: str = "general"
    color: str | None = None


class DomainConfig(BaseModel):
    key: str
    label: str
    color: str
    description: str | None = None


class RelationshipTypeConfig(BaseModel):
    type: str
    label: str
    description: str | None = None
    bidirectional: bool = False
    color: str | None = None


class GraphSettings(BaseModel):
    """Complete settings document for one scope."""

    instance: InstanceSettings = Field(default_factory=InstanceSettings)
    visualization: VisualizationSettings = Field(
        default_factory=VisualizationSettings
    )
    analysis: AnalysisSettings = Field(default_factory=AnalysisSettings)
    node_types: list[NodeTypeConfig] = Field(default_factory=list)
    domains: list[DomainConfig] = Field(default_factory=list)
    relationship_types: list[RelationshipTypeConfig] = Field(default_factory=list)


class GraphSettingsUpdate(BaseModel):
    """
    Partial settings update.

    ``visualization`` and ``analysis`` are merged key-by-key into the
    current section; list sections replace the current list wholesale.
    """

    visualization: dict[str, Any] | None = None
    analysis: dict[str, Any] | None = None
    node_types: list[NodeTypeConfig] | None = None
    domains: list[DomainConfig] | None = None
    relationship_types: list[RelationshipTypeConfig] | None = None


def default_settings() -> GraphSettings:
    """Fresh settings document with every section at its default."""
    return GraphSettings()


def apply_settings_update(
    current: GraphSettings, update: GraphSettingsUpdate
) -> GraphSettings:
    """
    Merge an update into a settings document.

    Args:
        current: Existing settings
        update: Partial update

    Returns:
        New settings document (``current`` is not mutated)

    Raises:
        pydantic.ValidationError: If a merged section is invalid
    """
    data = current.model_dump()
    if update.visualization:
        data["visualization"] = {**data["visualization"], **update.visualization}
    if update.analysis:
        data["analysis"] = {**data["analysis"], **update.analysis}
    for section in ("node_types", "domains", "relationship_types"):
        value = getattr(update, section)
        if value is not None:
            data[section] = [item.model_dump() for item in value]
    return GraphSettings.model_validate(data)


def reset_settings_sections(
    current: GraphSettings, sections: list[str] | None = None
) -> GraphSettings:
    """
    Reset the named sections to defaults (all sections when none are named).

    Unknown section names are ignored.
    """
    defaults = default_settings()
    if not sections:
        return defaults

    updated = current.model_copy(deep=True)
    for section in sections:
        if section in SETTINGS_SECTIONS:
            setattr(updated, section, getattr(defaults, section))
    return updated
