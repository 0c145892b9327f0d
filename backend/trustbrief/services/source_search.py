"""
Source search collaborator client.

WHAT THIS DOES:
Finds candidate sources for a question. The concrete academic providers
(OpenAlex, Crossref, arXiv, ...) live behind a separate search service;
this module only speaks its uniform HTTP contract:

    GET  /search?q=...&providers=a,b&limit=N  → {"results": [SourceRecord, ...]}
    GET  /fulltext?provider=...&id=...        → {"text": "..."} or 404

A 5xx or network failure raises SourceSearchError (transient, the stage job
is retried). Any other 4xx is a DomainError and is not retried.

USAGE:
    search = HttpSourceSearch("http://search:8100")
    records = await search.search("carbon tax emissions", ["openalex"], limit=12)
"""

import logging
from typing import Optional, Protocol

import httpx
from pydantic import BaseModel, Field, ValidationError

from trustbrief.errors import DomainError, SourceSearchError

logger = logging.getLogger(__name__)


class SourceRecord(BaseModel):
    """One search hit, as returned by the collaborator."""
    provider: str
    external_id: str
    title: str
    abstract: Optional[str] = None
    doi: Optional[str] = None
    url: Optional[str] = None
    year: Optional[int] = None
    citation_count: int = Field(default=0, ge=0)
    open_access: bool = False
    raw: dict = Field(default_factory=dict)


class SourceSearch(Protocol):
    async def search(self, query: str, providers: list[str], limit: int) -> list[SourceRecord]:
        ...

    async def fetch_full_text(self, provider: str, external_id: str) -> Optional[str]:
        ...


class HttpSourceSearch:
    def __init__(self, base_url: str, timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client (lazy initialization)."""
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout)
        return self._client

    async def search(self, query: str, providers: list[str], limit: int) -> list[SourceRecord]:
        params = {"q": query, "limit": limit}
        if providers:
            params["providers"] = ",".join(providers)

        data = await self._get_json("/search", params)
        records = []
        for item in data.get("results", []):
            try:
                records.append(SourceRecord.model_validate(item))
            except ValidationError as e:
                logger.warning(f"Skipping malformed search result: {e.errors()[0]['msg']}")
        logger.info(f"Source search '{query[:60]}' returned {len(records)} results")
        return records

    async def fetch_full_text(self, provider: str, external_id: str) -> Optional[str]:
        data = await self._get_json("/fulltext", {"provider": provider, "id": external_id}, missing_ok=True)
        if data is None:
            return None
        return data.get("text") or None

    async def _get_json(self, path: str, params: dict, missing_ok: bool = False) -> Optional[dict]:
        client = await self._get_client()
        try:
            response = await client.get(path, params=params)
        except httpx.HTTPError as e:
            raise SourceSearchError(f"Source search {path} unreachable: {e}") from e

        status = response.status_code
        if status == 404 and missing_ok:
            return None
        if status >= 500:
            raise SourceSearchError(f"Source search {path} returned {status}")
        if status >= 400:
            raise DomainError(
                f"Source search rejected {path} request ({status})",
                code="SOURCE_SEARCH_REJECTED",
                status_code=400,
            )
        return response.json()

    async def close(self):
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None
