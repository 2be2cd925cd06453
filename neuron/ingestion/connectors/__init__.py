"""Record sources for the ingestion engine."""

from neuron.ingestion.connectors.github import GitHubConnector
from neuron.ingestion.connectors.markdown import MarkdownConnector
from neuron.ingestion.connectors.notion import NotionExportConnector
from neuron.ingestion.connectors.rss import RssConnector
from neuron.ingestion.types import Connector, IngestionSourceRef


def connector_for_source(source: IngestionSourceRef) -> Connector:
    """
    Build the connector described by a source's type and config.

    Config keys: ``path`` (markdown, notion), ``url`` (rss), ``repo`` plus
    optional ``token``, ``state`` and ``api_base_url`` (github).

    Raises:
        ValueError: For an unknown type or a missing required key
    """
    config = source.config
    try:
        if source.type == "markdown":
            return MarkdownConnector(config["path"])
        if source.type == "notion":
            return NotionExportConnector(config["path"])
        if source.type == "rss":
            return RssConnector(config["url"])
        if source.type == "github":
            return GitHubConnector(
                config["repo"],
                token=config.get("token"),
                state=config.get("state", "open"),
                api_base_url=config.get("api_base_url", "https://api.github.com"),
            )
    except KeyError as e:
        raise ValueError(f"Source {source.key} is missing config key {e}") from e
    raise ValueError(f"Unknown connector type: {source.type}")


__all__ = [
    "GitHubConnector",
    "MarkdownConnector",
    "NotionExportConnector",
    "RssConnector",
    "connector_for_source",
]
