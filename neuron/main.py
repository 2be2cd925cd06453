"""
FastAPI application entry point.

Configures and creates the FastAPI application with:
- Service lifecycle management
- Exception handlers
- Router mounting
"""

import logging

from dotenv import load_dotenv
from fastapi import FastAPI

# Load environment variables first
load_dotenv()

from neuron.core.logging import configure_logging  # noqa: E402

configure_logging(logging.INFO)

# Import application components
from neuron.api.errors import register_exception_handlers  # noqa: E402
from neuron.api.routers import (  # noqa: E402
    analysis_router,
    graph_router,
    search_router,
    suggestions_router,
)
from neuron.services import services_lifespan  # noqa: E402

# Create FastAPI application with service lifecycle management
app = FastAPI(
    title="Neuron",
    description="Knowledge graph enrichment: embeddings, clustering and reviewed relationship inference",
    version="0.1.0",
    lifespan=services_lifespan,
)

# Register exception handlers
register_exception_handlers(app)

# Mount API routers
app.include_router(analysis_router)
app.include_router(suggestions_router)
app.include_router(graph_router)
app.include_router(search_router)


@app.get("/health")
async def health() -> dict[str, str]:
    """Liveness check."""
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("neuron.main:app", host="127.0.0.1", port=8000, reload=True)
