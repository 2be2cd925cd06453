"""
Notion markdown export connector.

A Notion export stores each page as ``Page.md`` and its sub-pages in a
sibling ``Page/`` directory. Every page becomes a ``document`` record in
domain ``notion``; a page inside ``Page/`` gets ``Page.md`` as its parent.
Links between pages are URL-encoded relative paths, resolved the same way
as in the markdown connector.
"""

from __future__ import annotations

import asyncio
import logging
import posixpath
from datetime import datetime, timezone
from pathlib import Path

from neuron.ingestion.connectors.markdown import (
    extract_markdown_links,
    first_heading,
    list_markdown_files,
    resolve_link,
    slug_index,
)
from neuron.ingestion.types import IngestionRecord

logger = logging.getLogger(__name__)


def parent_page(external_id: str, external_ids: set[str]) -> str | None:
    """``<dir>.md`` for a page stored under ``<dir>/``, if that page exists."""
    directory = posixpath.dirname(external_id)
    if not directory or directory in (".", "/"):
        return None
    candidate = f"{directory}.md"
    return candidate if candidate in external_ids else None


class NotionExportConnector:
    """
    Connector over an unzipped Notion "Markdown & CSV" export.

    Args:
        path: Root directory of the export
    """

    type = "notion"

    def __init__(self, path: str | Path) -> None:
        self.root = Path(path).resolve()

    def _read_pages(
        self, limit: int | None, since: datetime | None
    ) -> list[tuple[IngestionRecord, list[str]]]:
        files = list_markdown_files(self.root)
        if limit:
            files = files[: max(0, limit)]

        pages = []
        for file_path, external_id in files:
            modified_at = datetime.fromtimestamp(file_path.stat().st_mtime, tz=timezone.utc)
            if since is not None and modified_at < since:
                continue
            text = file_path.read_text(encoding="utf-8")
            title = first_heading(text) or posixpath.splitext(posixpath.basename(external_id))[0]
            record = IngestionRecord(
                external_id=external_id,
                title=title,
                content=text.strip(),
                updated_at=modified_at,
                metadata={"file_path": external_id},
                node_type="document",
                domain="notion",
            )
            pages.append((record, extract_markdown_links(text)))
        return pages

    async def list_records(
        self, limit: int | None = None, since: datetime | None = None
    ) -> list[IngestionRecord]:
        """
        Read the export and build page records.

        ``limit`` keeps the first N pages by relative path before ``since``
        drops pages not modified since then.
        """
        if not self.root.is_dir():
            raise ValueError(f"Notion export root is not a directory: {self.root}")

        pages = await asyncio.to_thread(self._read_pages, limit, since)

        external_ids = {record.external_id for record, _ in pages}
        by_slug = slug_index([(record.external_id, record.title) for record, _ in pages])

        records = []
        for record, links in pages:
            references = [
                ref
                for ref in (
                    resolve_link(record.external_id, raw, external_ids, by_slug) for raw in links
                )
                if ref is not None and ref != record.external_id
            ]
            records.append(
                record.model_copy(
                    update={
                        "parent_external_id": parent_page(record.external_id, external_ids),
                        "references": list(dict.fromkeys(references)),
                    }
                )
            )

        logger.debug(f"Read {len(records)} Notion pages from {self.root}")
        return records
