"""Tests for the REST collaborator against a local aiohttp store."""

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from impact_canvas.errors import PersistenceError
from impact_canvas.http_store import HttpPersistenceCollaborator
from impact_canvas.persistence import BatchUpdate


def create_store_app(requests: list, reject: set[str] = frozenset()):
    """A minimal impact-tree store that records what it receives."""

    async def handle_create(request):
        body = await request.json()
        requests.append(("POST", request.path, body))
        return web.json_response({"id": body["id"]}, status=201)

    async def handle_batch(request):
        body = await request.json()
        requests.append(("PUT", request.path, body))
        failed = [n["id"] for n in body["nodes"] if n["id"] in reject]
        updated = len(body["nodes"]) - len(failed)
        return web.json_response({"success": updated > 0, "updated": updated, "failed": failed or None})

    async def handle_delete(request):
        requests.append(("DELETE", request.path, None))
        if request.match_info["node_id"] in reject:
            return web.json_response({"error": "Node not found"}, status=404)
        return web.Response(status=204)

    async def handle_parent(request):
        body = await request.json()
        requests.append(("PUT", request.path, body))
        return web.json_response({"ok": True})

    app = web.Application()
    app.router.add_post('/api/impact-trees/{tree_id}/nodes', handle_create)
    app.router.add_put('/api/impact-trees/{tree_id}/nodes/batch', handle_batch)
    app.router.add_delete('/api/impact-trees/{tree_id}/nodes/{node_id}', handle_delete)
    app.router.add_put('/api/impact-trees/{tree_id}/nodes/{node_id}/parent', handle_parent)
    return app


@pytest.mark.asyncio
async def test_routes_and_payloads():
    requests = []
    async with TestServer(create_store_app(requests)) as server:
        async with HttpPersistenceCollaborator(str(server.make_url("/")), 7) as store:
            assert await store.create_node({"id": "n1", "type": "outcome"}) == "n1"
            result = await store.batch_update([
                BatchUpdate(node_id="n1", patch={"position": {"x": 1, "y": 2}}),
            ])
            await store.reattach("n1", None)
            await store.delete_node("n1")

    assert result.success
    assert result.updated == ["n1"]
    assert requests == [
        ("POST", "/api/impact-trees/7/nodes", {"id": "n1", "type": "outcome"}),
        ("PUT", "/api/impact-trees/7/nodes/batch",
         {"nodes": [{"id": "n1", "position": {"x": 1, "y": 2}}]}),
        ("PUT", "/api/impact-trees/7/nodes/n1/parent", {"parentId": None}),
        ("DELETE", "/api/impact-trees/7/nodes/n1", None),
    ]


@pytest.mark.asyncio
async def test_partial_batch_failure_is_reported():
    requests = []
    async with TestServer(create_store_app(requests, reject={"bad"})) as server:
        async with HttpPersistenceCollaborator(str(server.make_url("/")), 1) as store:
            result = await store.batch_update([
                BatchUpdate(node_id="ok", patch={"title": "a"}),
                BatchUpdate(node_id="bad", patch={"title": "b"}),
            ])

    assert result.failed == ["bad"]
    assert result.updated == ["ok"]


@pytest.mark.asyncio
async def test_error_status_raises_persistence_error():
    requests = []
    async with TestServer(create_store_app(requests, reject={"gone"})) as server:
        async with HttpPersistenceCollaborator(str(server.make_url("/")), 1) as store:
            with pytest.raises(PersistenceError) as info:
                await store.delete_node("gone")

    assert info.value.node_ids == ["gone"]
    assert "404" in str(info.value)
