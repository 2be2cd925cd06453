"""
Markdown directory connector.

Every ``*.md`` file under the root becomes one record whose external id
is its POSIX path relative to the root. Wiki links (``[[Target]]``) and
relative markdown links (``[text](other.md)``) that point at another
file of the same listing are resolved into ``references``.
"""

from __future__ import annotations

import asyncio
import logging
import posixpath
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from urllib.parse import unquote

from neuron.ingestion.types import IngestionRecord
from neuron.kg.slugs import stable_slug_base

logger = logging.getLogger(__name__)

SKIP_DIRS = {".git", "node_modules", "__pycache__", ".venv"}

_WIKI_LINK = re.compile(r"\[\[([^\[\]]+)\]\]")
_MD_LINK = re.compile(r"\[[^\]]*\]\(([^)\s]+)(?:\s+\"[^\"]*\")?\)")


def extract_markdown_links(markdown: str) -> list[str]:
    """Raw link targets from wiki links then markdown links, deduplicated in order."""
    links: list[str] = []
    for match in _WIKI_LINK.finditer(markdown):
        target = match.group(1).split("|", 1)[0].strip()
        if target:
            links.append(target)
    for match in _MD_LINK.finditer(markdown):
        target = match.group(1).strip()
        if target:
            links.append(target)
    return list(dict.fromkeys(links))


def parse_front_matter(markdown: str) -> tuple[dict[str, str], str]:
    """
    Split ``---`` delimited ``key: value`` front matter from the body.

    Only flat string values are supported. Text without a closed front
    matter block is returned unchanged with empty data.
    """
    normalized = markdown.replace("\r\n", "\n")
    if not normalized.startswith("---\n"):
        return {}, markdown
    end = normalized.find("\n---\n", 4)
    if end == -1:
        return {}, markdown

    data: dict[str, str] = {}
    for line in normalized[4:end].strip().split("\n"):
        key, sep, value = line.partition(":")
        if sep and key.strip():
            data[key.strip()] = value.strip()
    return data, normalized[end + len("\n---\n"):]


def first_heading(markdown: str) -> str | None:
    for line in markdown.replace("\r\n", "\n").split("\n"):
        stripped = line.strip()
        if stripped.startswith("# "):
            return stripped[2:].strip()
    return None


def _is_file_link(target: str) -> bool:
    return "/" in target or target.endswith(".md") or target.startswith(".")


def list_markdown_files(root: Path) -> list[tuple[Path, str]]:
    """``(path, posix relative path)`` of every ``.md`` file under ``root``, sorted."""
    files: list[tuple[Path, str]] = []
    for file_path in root.rglob("*"):
        relative = file_path.relative_to(root)
        if any(part in SKIP_DIRS for part in relative.parts[:-1]):
            continue
        if file_path.is_file() and file_path.name.lower().endswith(".md"):
            files.append((file_path, relative.as_posix()))
    files.sort(key=lambda item: item[1])
    return files


def slug_index(entries: list[tuple[str, str]]) -> dict[str, str]:
    """Map the slug of each ``(external_id, title)`` title and file stem to its id."""
    by_slug: dict[str, str] = {}
    for external_id, title in entries:
        by_slug[stable_slug_base(title)] = external_id
        stem = posixpath.splitext(posixpath.basename(external_id))[0]
        by_slug[stable_slug_base(stem)] = external_id
    return by_slug


def resolve_link(
    current: str, raw: str, external_ids: set[str], by_slug: dict[str, str]
) -> str | None:
    """
    Resolve one raw link found in ``current`` to another file's external id.

    Path-like targets are normalized against the linking file's directory
    (a leading ``/`` means the root) and may omit ``.md``. Bare names are
    looked up by title or file-stem slug.
    """
    target = unquote(raw).split("#", 1)[0].strip()
    if not target or target.startswith(("http://", "https://")):
        return None
    if _is_file_link(target):
        if target.startswith("/"):
            candidate = posixpath.normpath(target[1:])
        else:
            candidate = posixpath.normpath(posixpath.join(posixpath.dirname(current), target))
        if candidate in external_ids:
            return candidate
        if not candidate.endswith(".md") and f"{candidate}.md" in external_ids:
            return f"{candidate}.md"
        return None
    return by_slug.get(stable_slug_base(target))


@dataclass
class _ParsedFile:
    external_id: str
    title: str
    body: str
    front_matter: dict[str, str]
    modified_at: datetime
    links: list[str] = field(default_factory=list)


class MarkdownConnector:
    """
    Connector over a directory tree of markdown notes.

    Args:
        path: Root directory to walk
    """

    type = "markdown"

    def __init__(self, path: str | Path) -> None:
        self.root = Path(path).resolve()

    def _read_files(self, limit: int | None, since: datetime | None) -> list[_ParsedFile]:
        files = list_markdown_files(self.root)
        if limit:
            files = files[: max(0, limit)]

        parsed: list[_ParsedFile] = []
        for file_path, external_id in files:
            modified_at = datetime.fromtimestamp(file_path.stat().st_mtime, tz=timezone.utc)
            if since is not None and modified_at < since:
                continue
            front_matter, body = parse_front_matter(file_path.read_text(encoding="utf-8"))
            title = (
                front_matter.get("title", "").strip()
                or first_heading(body)
                or posixpath.splitext(posixpath.basename(external_id))[0]
            )
            parsed.append(
                _ParsedFile(
                    external_id=external_id,
                    title=title,
                    body=body,
                    front_matter=front_matter,
                    modified_at=modified_at,
                    links=extract_markdown_links(body),
                )
            )
        return parsed

    async def list_records(
        self, limit: int | None = None, since: datetime | None = None
    ) -> list[IngestionRecord]:
        """
        Read the tree and build records.

        Args:
            limit: Keep only the first N files (sorted by relative path)
            since: Skip files last modified before this time

        Returns:
            One IngestionRecord per file, references resolved within the listing
        """
        if not self.root.is_dir():
            raise ValueError(f"Markdown root is not a directory: {self.root}")

        parsed = await asyncio.to_thread(self._read_files, limit, since)

        external_ids = {item.external_id for item in parsed}
        by_slug = slug_index([(item.external_id, item.title) for item in parsed])

        records: list[IngestionRecord] = []
        for item in parsed:
            references = [
                ref
                for ref in (
                    resolve_link(item.external_id, raw, external_ids, by_slug) for raw in item.links
                )
                if ref is not None and ref != item.external_id
            ]
            metadata: dict[str, Any] = {**item.front_matter, "file_path": item.external_id}
            records.append(
                IngestionRecord(
                    external_id=item.external_id,
                    title=item.title,
                    content=item.body.strip(),
                    updated_at=item.modified_at,
                    metadata=metadata,
                    node_type="document",
                    domain="docs",
                    references=list(dict.fromkeys(references)),
                )
            )

        logger.debug(f"Read {len(records)} markdown records from {self.root}")
        return records
