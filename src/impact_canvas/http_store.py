"""REST store for impact tree nodes, over aiohttp."""

from __future__ import annotations

import logging
from typing import Any, Optional

import aiohttp

from .errors import PersistenceError
from .persistence import BatchUpdate, BatchUpdateResult, PersistenceCollaborator

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0


class HttpPersistenceCollaborator(PersistenceCollaborator):
    """Writes node changes to the impact-tree REST API.

    Routes, relative to ``base_url``::

        POST   /api/impact-trees/{tree}/nodes
        PUT    /api/impact-trees/{tree}/nodes/batch
        DELETE /api/impact-trees/{tree}/nodes/{id}
        PUT    /api/impact-trees/{tree}/nodes/{id}/parent

    Pass an existing ``aiohttp.ClientSession`` to share connections, or use
    the collaborator as an async context manager to have it own one.
    """

    def __init__(
        self,
        base_url: str,
        tree_id: str | int,
        session: Optional[aiohttp.ClientSession] = None,
        token: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.base_url = base_url.rstrip("/")
        self.tree_id = str(tree_id)
        self._session = session
        self._owns_session = session is None
        self._token = token
        self._timeout = timeout

    async def __aenter__(self) -> HttpPersistenceCollaborator:
        self._client()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    def _client(self) -> aiohttp.ClientSession:
        if self._session is None:
            headers = {"Authorization": f"Bearer {self._token}"} if self._token else None
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout),
                headers=headers,
            )
        return self._session

    def _url(self, suffix: str = "") -> str:
        return f"{self.base_url}/api/impact-trees/{self.tree_id}/nodes{suffix}"

    async def _request(
        self,
        method: str,
        url: str,
        payload: Any = None,
        node_ids: Optional[list[str]] = None,
    ) -> Any:
        try:
            async with self._client().request(method, url, json=payload) as response:
                if response.status // 100 != 2:
                    body = await response.text()
                    raise PersistenceError(
                        f"{method} {url} returned {response.status}: {body[:200]}",
                        node_ids,
                    )
                if response.content_type == "application/json":
                    return await response.json()
                return None
        except aiohttp.ClientError as exc:
            raise PersistenceError(f"{method} {url} failed: {exc}", node_ids) from exc

    async def create_node(self, spec: dict[str, Any]) -> str:
        data = await self._request("POST", self._url(), spec, [spec["id"]])
        if isinstance(data, dict) and data.get("id") is not None:
            return str(data["id"])
        return spec["id"]

    async def batch_update(self, updates: list[BatchUpdate]) -> BatchUpdateResult:
        sent = [u.node_id for u in updates]
        body = {"nodes": [{"id": u.node_id, **u.patch} for u in updates]}
        data = await self._request("PUT", self._url("/batch"), body, sent)

        failed: list[str] = []
        if isinstance(data, dict):
            # ``updated`` is a count; only ``failed`` names nodes.
            failed = [str(i) for i in data.get("failed") or []]
            if data.get("success") is False and not failed:
                failed = sent
        if failed:
            logger.warning("Store rejected %d of %d updates", len(failed), len(sent))
        return BatchUpdateResult(
            updated=[i for i in sent if i not in failed],
            failed=failed,
        )

    async def delete_node(self, node_id: str) -> None:
        await self._request("DELETE", self._url(f"/{node_id}"), node_ids=[node_id])

    async def reattach(self, node_id: str, new_parent_id: Optional[str]) -> None:
        await self._request(
            "PUT", self._url(f"/{node_id}/parent"), {"parentId": new_parent_id}, [node_id]
        )
