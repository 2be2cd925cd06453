"""Analysis pipeline: embeddings, clustering, relationship inference and governance."""

from neuron.analysis.cancellation import CancellationToken, JobCancelledError, JobRegistry
from neuron.analysis.clustering import ClusteringConfig, ClusteringEngine
from neuron.analysis.embeddings import EmbeddingsConfig, EmbeddingsService
from neuron.analysis.governance import GovernanceService, SuggestedEdgeRepository
from neuron.analysis.pipeline import AnalysisPipeline
from neuron.analysis.relationships import InferenceConfig, RelationshipEngine
from neuron.analysis.runs import AnalysisRunRepository
from neuron.analysis.scoring import ScoredNode, ScoringConfig, ScoringEngine

__all__ = [
    "AnalysisPipeline",
    "AnalysisRunRepository",
    "CancellationToken",
    "ClusteringConfig",
    "ClusteringEngine",
    "EmbeddingsConfig",
    "EmbeddingsService",
    "GovernanceService",
    "InferenceConfig",
    "JobCancelledError",
    "JobRegistry",
    "RelationshipEngine",
    "ScoredNode",
    "ScoringConfig",
    "ScoringEngine",
    "SuggestedEdgeRepository",
]
