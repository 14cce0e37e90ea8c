"""
Similarity Index backed by Weaviate.

Stores anonymized conversations as objects of one class (vectorized
server-side) and answers "conversations like this topic" queries through
GraphQL ``nearText``.
"""

from __future__ import annotations

import json
from typing import Any, Optional

import httpx

from carecall.config import Settings, get_settings
from carecall.errors import SimilarityIndexError
from carecall.logging_config import get_logger
from carecall.schemas.insight import ConversationDocument

logger = get_logger(__name__)

_QUERY_FIELDS = "content emotionalState behavioralCodes topics ageGroup region callDuration timestamp"


class WeaviateSimilarityIndex:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._client = client

    @property
    def enabled(self) -> bool:
        return self._settings.similarity_index_enabled

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._settings.weaviate_url.rstrip("/"),
                timeout=15.0,
                headers={
                    "Authorization": f"Bearer {self._settings.weaviate_api_key}",
                    "Content-Type": "application/json",
                },
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def index(self, document: ConversationDocument) -> str | None:
        """Store one anonymized conversation; returns the object id."""
        if not self.enabled:
            logger.info("similarity_index_disabled_skipping")
            return None

        payload = {"class": self._settings.weaviate_class, "properties": document.to_properties()}
        try:
            response = await self.client.post("/v1/objects", json=payload)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise SimilarityIndexError(f"Indexing conversation failed: {e}") from e

        object_id = response.json().get("id")
        logger.info("conversation_indexed", object_id=object_id, topics=document.topics)
        return object_id

    async def query_similar(self, topic_query: str, limit: int = 5) -> list[dict[str, Any]]:
        """Anonymized conversations closest to ``topic_query``."""
        if not self.enabled:
            return []

        class_name = self._settings.weaviate_class
        query = (
            "{ Get { "
            f"{class_name}(nearText: {{concepts: [{json.dumps(topic_query)}]}}, limit: {int(limit)}) "
            f"{{ {_QUERY_FIELDS} }}"
            " } }"
        )
        try:
            response = await self.client.post("/v1/graphql", json={"query": query})
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise SimilarityIndexError(f"Similarity query failed: {e}") from e

        body = response.json()
        if body.get("errors"):
            raise SimilarityIndexError(f"Similarity query rejected: {body['errors']}")
        return (body.get("data") or {}).get("Get", {}).get(class_name) or []

    async def health_check(self) -> dict[str, Any]:
        if not self.enabled:
            return {"status": "disabled", "message": "Weaviate not configured"}
        try:
            response = await self.client.get("/v1/meta")
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error("similarity_index_health_check_failed", error=str(e))
            return {"status": "unhealthy", "error": str(e)}

        meta = response.json()
        return {
            "status": "healthy",
            "version": meta.get("version"),
            "modules": sorted((meta.get("modules") or {}).keys()),
        }
