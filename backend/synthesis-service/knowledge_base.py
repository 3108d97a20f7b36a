"""
Synthesis Service - Guideline Retrieval

KnowledgeBaseClient talks to the ranked-retrieval collaborator (local JSON index or
remote knowledge-base endpoint). KnowledgeRetriever turns its results into Citations
and formats them for prompt inclusion. Retrieval is best-effort: the retriever never
propagates a collaborator failure.
"""

from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from config import ServiceSettings
from errors import PipelineInvocationError
from models import Citation

logger = logging.getLogger(__name__)

UNKNOWN_SOURCE = "Unknown Source"
REFERENCE_TEXT_LIMIT = 100

_TOKEN_RE = re.compile(r"[a-z0-9]+")
_STOPWORDS = {
    "a",
    "an",
    "and",
    "for",
    "in",
    "of",
    "on",
    "or",
    "the",
    "to",
    "with",
}


RetrievalKey = Tuple[str, str, int]


@dataclass
class _CachedResults:
    expires_at: float
    results: List[Dict[str, Any]]


class RetrievalCache:
    """
    Remote retrieval results keyed by (knowledge base, normalized query, result count).

    Expired entries are pruned before the soonest-expiring live entry is evicted.
    """

    def __init__(
        self,
        ttl_seconds: int,
        max_entries: int = 512,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = max(1, ttl_seconds)
        self.max_entries = max(1, max_entries)
        self._clock = clock
        self._entries: Dict[RetrievalKey, _CachedResults] = {}
        self._lock = Lock()

    @staticmethod
    def key_for(knowledge_base_id: str, query: str, max_results: int) -> RetrievalKey:
        return (knowledge_base_id, " ".join(query.lower().split()), max_results)

    def __len__(self) -> int:
        return len(self._entries)

    def lookup(self, key: RetrievalKey) -> Optional[List[Dict[str, Any]]]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expires_at <= self._clock():
                del self._entries[key]
                return None
            return list(entry.results)

    def store(self, key: RetrievalKey, results: List[Dict[str, Any]]) -> None:
        now = self._clock()
        with self._lock:
            if key not in self._entries and len(self._entries) >= self.max_entries:
                for stale in [k for k, e in self._entries.items() if e.expires_at <= now]:
                    del self._entries[stale]
                if len(self._entries) >= self.max_entries:
                    soonest = min(self._entries, key=lambda k: self._entries[k].expires_at)
                    del self._entries[soonest]
            self._entries[key] = _CachedResults(expires_at=now + self.ttl_seconds, results=list(results))


def _tokenize(text: str) -> List[str]:
    return [t for t in _TOKEN_RE.findall((text or "").lower()) if t not in _STOPWORDS]


def extract_source(location: Optional[Dict[str, Any]]) -> str:
    """
    Source label for a retrieval result: final path segment of its storage URI.
    """
    if not isinstance(location, dict):
        return UNKNOWN_SOURCE
    s3_location = location.get("s3Location")
    uri = s3_location.get("uri") if isinstance(s3_location, dict) else None
    if uri is None:
        uri = location.get("uri")
    if not isinstance(uri, str) or not uri:
        return UNKNOWN_SOURCE
    if "/" in uri:
        return uri.rsplit("/", 1)[-1]
    return uri


def result_to_citation(result: Dict[str, Any]) -> Optional[Citation]:
    content = result.get("content")
    text = content.get("text") if isinstance(content, dict) else None
    if text is None:
        return None
    score = result.get("score")
    return Citation(
        text=str(text),
        source=extract_source(result.get("location")),
        relevance_score=float(score) if isinstance(score, (int, float)) else 0.0,
    )


class KnowledgeBaseClient:
    """
    Ranked-retrieval collaborator. Raises PipelineInvocationError on failure.
    """

    def __init__(self, settings: ServiceSettings) -> None:
        self.mode = settings.retrieval_mode
        self.knowledge_base_id = settings.knowledge_base_id
        self.base_url = settings.knowledge_base_url
        self.guidelines_path = Path(settings.guidelines_path)
        self.timeout_seconds = settings.retrieval_timeout_seconds
        self.cache = RetrievalCache(ttl_seconds=settings.retrieval_cache_ttl_seconds)
        self._guidelines: Optional[List[Dict[str, Any]]] = None
        self._guidelines_lock = Lock()

    def retrieve(self, query: str, max_results: int) -> List[Citation]:
        if self.mode == "off" or not (query or "").strip():
            return []
        if self.mode == "local":
            results = self._retrieve_local(query, max_results)
        else:
            results = self._retrieve_remote(query, max_results)

        citations: List[Citation] = []
        for result in results:
            citation = result_to_citation(result)
            if citation is not None:
                citations.append(citation)
        logger.info("Retrieved %d guideline passages for query", len(citations))
        return citations

    # ----- Local index -----

    def _load_guidelines(self) -> List[Dict[str, Any]]:
        if self._guidelines is not None:
            return self._guidelines
        with self._guidelines_lock:
            if self._guidelines is None:
                try:
                    with self.guidelines_path.open("r", encoding="utf-8") as f:
                        payload = json.load(f)
                except (OSError, json.JSONDecodeError) as exc:
                    raise PipelineInvocationError(
                        f"Failed to load guideline index {self.guidelines_path}: {exc}"
                    ) from exc
                rows = payload.get("guidelines", []) if isinstance(payload, dict) else payload
                self._guidelines = [row for row in rows if isinstance(row, dict)]
        return self._guidelines

    def _retrieve_local(self, query: str, max_results: int) -> List[Dict[str, Any]]:
        query_tokens = set(_tokenize(query))
        if not query_tokens:
            return []

        scored = []
        for idx, row in enumerate(self._load_guidelines()):
            doc_tokens = set(_tokenize(str(row.get("text", ""))))
            doc_tokens.update(_tokenize(" ".join(str(t) for t in row.get("tags", []))))
            overlap = len(query_tokens & doc_tokens)
            if overlap == 0:
                continue
            score = overlap / len(query_tokens)
            scored.append((score, idx, row))

        scored.sort(key=lambda item: (-item[0], item[1]))
        results = []
        for score, _, row in scored[: max(1, max_results)]:
            results.append(
                {
                    "content": {"text": row.get("text")},
                    "location": {"s3Location": {"uri": row.get("uri")}} if row.get("uri") else None,
                    "score": round(score, 4),
                }
            )
        return results

    # ----- Remote knowledge base -----

    def _retrieve_remote(self, query: str, max_results: int) -> List[Dict[str, Any]]:
        key = RetrievalCache.key_for(self.knowledge_base_id, query, max_results)
        cached = self.cache.lookup(key)
        if cached is not None:
            return cached

        url = f"{self.base_url}/knowledgebases/{self.knowledge_base_id}/retrieve"
        body = {
            "retrievalQuery": {"text": query},
            "retrievalConfiguration": {
                "vectorSearchConfiguration": {"numberOfResults": max_results},
            },
        }
        try:
            with httpx.Client(timeout=self.timeout_seconds) as client:
                resp = client.post(url, json=body)
                resp.raise_for_status()
                payload = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise PipelineInvocationError(f"Failed to retrieve from knowledge base: {exc}") from exc

        results = payload.get("retrievalResults", []) if isinstance(payload, dict) else []
        results = [r for r in results if isinstance(r, dict)]
        self.cache.store(key, results)
        return results


class KnowledgeRetriever:
    def __init__(self, client: KnowledgeBaseClient, default_max_results: int = 5) -> None:
        self.client = client
        self.default_max_results = default_max_results

    @property
    def enabled(self) -> bool:
        return self.client.mode != "off"

    def retrieve(self, query: str, max_results: int) -> List[Citation]:
        try:
            return self.client.retrieve(query, max_results)
        except Exception as exc:
            logger.warning("Guideline retrieval failed, continuing without citations: %s", exc)
            return []

    def query_guidelines(self, symptoms: str) -> List[Citation]:
        return self.retrieve(symptoms, self.default_max_results)

    @staticmethod
    def format_citations_for_prompt(citations: List[Citation]) -> str:
        if not citations:
            return ""
        parts = [
            "\n\nTRUSTED MEDICAL GUIDELINES:\n",
            "Use the following evidence-based guidelines to inform your diagnosis:\n\n",
        ]
        for idx, citation in enumerate(citations, start=1):
            parts.append(
                f"[Guideline {idx}] (Source: {citation.source}, Relevance: {citation.relevance_score:.2f})\n"
            )
            parts.append(citation.text)
            parts.append("\n\n")
        parts.append(
            "IMPORTANT: Base your recommendations on these guidelines when applicable. "
            "Cite the guideline number (e.g., [Guideline 1]) in your reasoning.\n"
        )
        return "".join(parts)

    @staticmethod
    def extract_citation_references(response_text: str, citations: List[Citation]) -> List[str]:
        references: List[str] = []
        text = response_text or ""
        for idx, citation in enumerate(citations, start=1):
            if f"[Guideline {idx}]" not in text:
                continue
            snippet = citation.text
            if len(snippet) > REFERENCE_TEXT_LIMIT:
                snippet = snippet[:REFERENCE_TEXT_LIMIT] + "..."
            references.append(f"{citation.source}: {snippet}")
        return references
