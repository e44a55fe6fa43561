"""Tests for the MCP tool handlers."""

import json

import pytest

from impact_canvas import server
from impact_canvas.snapshot import parse_file


@pytest.fixture
def snapshot_path(tmp_path, monkeypatch):
    path = tmp_path / "tree.yaml"
    monkeypatch.setattr(server, "SNAPSHOT_PATH", path)
    monkeypatch.setattr(server, "_session", None)
    return path


async def _call(name, **arguments):
    result = await server.call_tool(name, arguments)
    return result[0].text


@pytest.mark.asyncio
async def test_tools_are_listed():
    names = {tool.name for tool in await server.list_tools()}
    assert names == set(server._HANDLERS)


@pytest.mark.asyncio
async def test_build_tree_through_tools(snapshot_path):
    root = json.loads(await _call("create_node", type="outcome", title="Grow retention"))
    root_id = root["node"]["id"]
    child = json.loads(await _call("create_node", type="opportunity", parent_id=root_id))
    child_id = child["node"]["id"]

    collapsed = json.loads(await _call("toggle_collapse", node_id=root_id))
    assert collapsed["collapsed"] is True

    tree = json.loads(await _call("get_tree", visible_only=True))
    assert [n["id"] for n in tree["nodes"]] == [root_id]
    assert tree["nodes"][0]["title"] == "Grow retention"

    flushed = json.loads(await _call("flush"))
    assert flushed["pending"] == 0
    assert flushed["saveStatus"] == "idle"

    saved = parse_file(snapshot_path)
    assert saved.get(child_id).parent_id == root_id
    assert saved.get(root_id).is_collapsed

    await server._session.close()


@pytest.mark.asyncio
async def test_errors_are_returned_as_text(snapshot_path):
    root = json.loads(await _call("create_node", type="outcome"))
    root_id = root["node"]["id"]

    text = await _call("reattach_node", node_id=root_id, new_parent_id=root_id)
    assert text.startswith("reattach_node failed:")

    assert (await _call("no_such_tool")) == "Unknown tool: no_such_tool"
    await server._session.close()
