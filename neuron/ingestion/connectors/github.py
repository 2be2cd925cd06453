"""
GitHub issues and pull requests connector.

Pages through ``GET /repos/{owner}/{name}/issues`` (which lists pull
requests too) and maps every item to one record keyed by its html URL.
``#123`` mentions and full issue/PR URLs that point at another item of
the same listing become ``references``.
"""

from __future__ import annotations

import logging
import os
import re
from datetime import datetime
from typing import Any, Literal

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential_jitter

from neuron.ingestion.types import IngestionRecord

logger = logging.getLogger(__name__)

DEFAULT_API_BASE_URL = "https://api.github.com"
PER_PAGE = 100

IssueState = Literal["open", "closed", "all"]

TransientHttpError = (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)

_ISSUE_NUMBER = re.compile(r"(?:^|[^\w])#(\d+)\b")
_ISSUE_URL = re.compile(
    r"https://github\.com/[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+/(?:issues|pull)/\d+"
)


def parse_repo(repo: str) -> tuple[str, str]:
    """
    Split ``owner/name``.

    Raises:
        ValueError: If either part is missing
    """
    owner, _, name = repo.partition("/")
    if not owner or not name or "/" in name:
        raise ValueError(f"Invalid GitHub repo '{repo}' (expected owner/name)")
    return owner, name


def extract_issue_numbers(text: str) -> list[int]:
    return list(dict.fromkeys(int(n) for n in _ISSUE_NUMBER.findall(text)))


def extract_issue_urls(text: str) -> list[str]:
    return list(dict.fromkeys(_ISSUE_URL.findall(text)))


def _label_name(label: Any) -> str:
    if isinstance(label, str):
        return label
    return (label or {}).get("name") or ""


class GitHubConnector:
    """
    Connector for the issues and pull requests of one repository.

    Args:
        repo: ``owner/name``
        token: API token (falls back to the ``GITHUB_TOKEN`` environment variable)
        state: Which items to list
        api_base_url: API root, for GitHub Enterprise
        timeout: Request timeout in seconds
        transport: Optional httpx transport (tests use ``httpx.MockTransport``)
    """

    type = "github"

    def __init__(
        self,
        repo: str,
        token: str | None = None,
        state: IssueState = "open",
        api_base_url: str = DEFAULT_API_BASE_URL,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.owner, self.name = parse_repo(repo)
        self.token = token or os.environ.get("GITHUB_TOKEN")
        self.state = state
        self.api_base_url = api_base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    @property
    def repo(self) -> str:
        return f"{self.owner}/{self.name}"

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/vnd.github+json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    @retry(
        reraise=True,
        stop=stop_after_attempt(3),
        wait=wait_exponential_jitter(initial=0.5, max=10.0),
        retry=retry_if_exception_type(TransientHttpError),
    )
    async def _fetch_page(
        self, client: httpx.AsyncClient, page: int, since: datetime | None
    ) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"state": self.state, "per_page": PER_PAGE, "page": page}
        if since is not None:
            params["since"] = since.isoformat()
        response = await client.get(f"/repos/{self.owner}/{self.name}/issues", params=params)
        if response.status_code >= 400:
            raise RuntimeError(
                f"GitHub request failed ({response.status_code}) for {self.repo}: "
                f"{response.text[:200]}"
            )
        batch = response.json()
        return batch if isinstance(batch, list) else []

    def _to_record(self, item: dict[str, Any]) -> IngestionRecord:
        updated_at = item.get("updated_at")
        return IngestionRecord(
            external_id=item["html_url"],
            url=item["html_url"],
            title=f"{self.repo}#{item['number']}: {item.get('title') or ''}",
            content=item.get("body") or "",
            updated_at=datetime.fromisoformat(updated_at.replace("Z", "+00:00"))
            if updated_at
            else None,
            domain="github",
            node_type="pull_request" if item.get("pull_request") else "issue",
            metadata={
                "repo": self.repo,
                "number": item["number"],
                "state": item.get("state"),
                "author": (item.get("user") or {}).get("login"),
                "labels": [name for name in map(_label_name, item.get("labels") or []) if name],
            },
        )

    async def list_records(
        self, limit: int | None = None, since: datetime | None = None
    ) -> list[IngestionRecord]:
        """
        Page through the repository's issues until an empty page or ``limit``.

        ``since`` is passed to the API, which filters on ``updated_at``.

        Raises:
            RuntimeError: On a non-success response
        """
        records: list[IngestionRecord] = []
        async with httpx.AsyncClient(
            base_url=self.api_base_url,
            headers=self._headers(),
            timeout=self.timeout,
            follow_redirects=True,
            transport=self._transport,
        ) as client:
            page = 1
            while not (limit and len(records) >= limit):
                batch = await self._fetch_page(client, page, since)
                if not batch:
                    break
                for item in batch:
                    records.append(self._to_record(item))
                    if limit and len(records) >= limit:
                        break
                page += 1

        by_number = {record.metadata["number"]: record.external_id for record in records}
        known = set(by_number.values())
        linked = []
        for record in records:
            text = f"{record.title}\n{record.content}"
            references = [by_number[n] for n in extract_issue_numbers(text) if n in by_number]
            references += [url for url in extract_issue_urls(text) if url in known]
            linked.append(
                record.model_copy(
                    update={
                        "references": [
                            ref for ref in dict.fromkeys(references) if ref != record.external_id
                        ]
                    }
                )
            )

        logger.debug(f"Fetched {len(linked)} issues and pull requests from {self.repo}")
        return linked
