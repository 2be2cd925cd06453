"""
API router modules.

This package contains FastAPI routers organized by feature area:
- analysis: Analysis job start, polling and cancellation
- suggestions: Review workflow for AI-inferred edges
- graph: Graph views, expansion and path search
- search: Semantic search and similar-node lookup
"""

from neuron.api.routers.analysis import router as analysis_router
from neuron.api.routers.graph import router as graph_router
from neuron.api.routers.search import router as search_router
from neuron.api.routers.suggestions import router as suggestions_router

__all__ = [
    "analysis_router",
    "graph_router",
    "search_router",
    "suggestions_router",
]
