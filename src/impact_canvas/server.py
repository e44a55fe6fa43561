"""Impact Canvas MCP server — tools for editing an impact tree."""

from __future__ import annotations

import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Optional

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from .config import get_settings
from .errors import CanvasError
from .http_store import HttpPersistenceCollaborator
from .models import NodeType, Orientation, Position, TestCategory
from .persistence import InMemoryCollaborator, PersistenceCollaborator
from .session import CanvasSession
from .snapshot import parse_file, save_file
from .tree import TreeModel


# --- Constants ---
SNAPSHOT_PATH = Path(
    os.environ.get("IMPACT_CANVAS_SNAPSHOT", Path.home() / ".impact-canvas" / "tree.yaml")
)
STORE_URL = os.environ.get("IMPACT_CANVAS_STORE_URL")
STORE_TREE_ID = os.environ.get("IMPACT_CANVAS_TREE_ID", "1")
STORE_TOKEN = os.environ.get("IMPACT_CANVAS_STORE_TOKEN")
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

logger = logging.getLogger(__name__)

server = Server("impact-canvas")

_session: Optional[CanvasSession] = None


def _build_collaborator() -> PersistenceCollaborator:
    if STORE_URL:
        logger.info("Persisting to %s (tree %s)", STORE_URL, STORE_TREE_ID)
        return HttpPersistenceCollaborator(STORE_URL, STORE_TREE_ID, token=STORE_TOKEN)
    return InMemoryCollaborator()


def _get_session() -> CanvasSession:
    global _session
    if _session is None:
        settings = get_settings()
        if SNAPSHOT_PATH.exists():
            model = parse_file(SNAPSHOT_PATH, settings)
            logger.info("Loaded %d nodes from %s", len(model), SNAPSHOT_PATH)
        else:
            model = TreeModel()
        _session = CanvasSession(model, _build_collaborator(), settings)
    return _session


def _save(session: CanvasSession) -> None:
    save_file(session.model, SNAPSHOT_PATH)


def _result(**data: Any) -> list[TextContent]:
    return [TextContent(type="text", text=json.dumps({"status": "success", **data}))]


def _position(args: dict) -> Optional[Position]:
    if "x" in args and "y" in args:
        return Position(x=float(args["x"]), y=float(args["y"]))
    return None


# --- Tool definitions ---

_NODE_ID = {"type": "string", "description": "Id of the node"}


@server.list_tools()
async def list_tools() -> list[Tool]:
    return [
        Tool(
            name="create_node",
            description=(
                "Add a node to the impact tree. Without x/y the node is placed "
                "automatically: next to the existing roots, or one level beyond "
                "its parent without overlapping anything."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "type": {
                        "type": "string",
                        "enum": [t.value for t in NodeType],
                        "description": "Node type",
                    },
                    "parent_id": {"type": "string", "description": "Parent node id (omit for a root)"},
                    "title": {"type": "string", "description": "Title (defaults per type)"},
                    "description": {"type": "string"},
                    "test_category": {
                        "type": "string",
                        "enum": [c.value for c in TestCategory],
                        "description": "Assumption test category",
                    },
                    "x": {"type": "number"},
                    "y": {"type": "number"},
                },
                "required": ["type"],
            },
        ),
        Tool(
            name="update_node",
            description="Change a node's title, description or test category.",
            inputSchema={
                "type": "object",
                "properties": {
                    "node_id": _NODE_ID,
                    "title": {"type": "string"},
                    "description": {"type": "string"},
                    "test_category": {"type": "string", "enum": [c.value for c in TestCategory]},
                },
                "required": ["node_id"],
            },
        ),
        Tool(
            name="move_node",
            description="Move a node (and its subtree) to a canvas position, snapped to the grid.",
            inputSchema={
                "type": "object",
                "properties": {
                    "node_id": _NODE_ID,
                    "x": {"type": "number"},
                    "y": {"type": "number"},
                },
                "required": ["node_id", "x", "y"],
            },
        ),
        Tool(
            name="delete_node",
            description="Delete a node together with all of its descendants.",
            inputSchema={
                "type": "object",
                "properties": {"node_id": _NODE_ID},
                "required": ["node_id"],
            },
        ),
        Tool(
            name="reattach_node",
            description=(
                "Move a node under a new parent. Omit new_parent_id to detach it "
                "into a separate tree. Attaching a node under its own descendant "
                "is rejected."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "node_id": _NODE_ID,
                    "new_parent_id": {"type": "string"},
                },
                "required": ["node_id"],
            },
        ),
        Tool(
            name="toggle_collapse",
            description="Collapse or expand a node's descendants.",
            inputSchema={
                "type": "object",
                "properties": {"node_id": _NODE_ID},
                "required": ["node_id"],
            },
        ),
        Tool(
            name="toggle_child_visibility",
            description="Hide or show one child branch of a node.",
            inputSchema={
                "type": "object",
                "properties": {
                    "parent_id": {"type": "string"},
                    "child_id": {"type": "string"},
                },
                "required": ["parent_id", "child_id"],
            },
        ),
        Tool(
            name="set_orientation",
            description=(
                "Switch layout direction: 'horizontal' (children to the right) "
                "or 'vertical' (children below). Re-lays out the whole tree."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "orientation": {"type": "string", "enum": [o.value for o in Orientation]},
                },
                "required": ["orientation"],
            },
        ),
        Tool(
            name="pan_zoom",
            description="Set the viewport zoom (clamped to 0.1-3.0) and/or pan offset.",
            inputSchema={
                "type": "object",
                "properties": {
                    "zoom": {"type": "number"},
                    "pan_x": {"type": "number"},
                    "pan_y": {"type": "number"},
                },
            },
        ),
        Tool(
            name="auto_layout",
            description="Re-lay out every tree on the canvas.",
            inputSchema={"type": "object", "properties": {}},
        ),
        Tool(
            name="get_tree",
            description=(
                "Return the tree: nodes, connections, canvas state and save status. "
                "With visible_only, collapsed and hidden branches are left out."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "visible_only": {"type": "boolean", "default": False},
                },
            },
        ),
        Tool(
            name="flush",
            description="Write all pending changes to the store now.",
            inputSchema={"type": "object", "properties": {}},
        ),
    ]


@server.call_tool()
async def call_tool(name: str, arguments: dict) -> list[TextContent]:
    handler = _HANDLERS.get(name)
    if handler is None:
        return [TextContent(type="text", text=f"Unknown tool: {name}")]
    session = _get_session()
    try:
        result = await handler(session, arguments or {})
    except (CanvasError, ValueError, KeyError) as e:
        logger.warning("Tool %s failed: %s", name, e)
        return [TextContent(type="text", text=f"{name} failed: {e}")]
    _save(session)
    return result


async def _create_node(session: CanvasSession, args: dict) -> list[TextContent]:
    node = await session.create_node(
        args["type"],
        parent_id=args.get("parent_id"),
        position=_position(args),
        test_category=args.get("test_category"),
    )
    content = {k: args[k] for k in ("title", "description") if k in args}
    if content:
        session.update_content(node.id, **content)
    return _result(node=node.to_wire())


async def _update_node(session: CanvasSession, args: dict) -> list[TextContent]:
    fields = {k: args[k] for k in ("title", "description", "test_category") if k in args}
    node = session.update_content(args["node_id"], **fields)
    return _result(node=node.to_wire())


async def _move_node(session: CanvasSession, args: dict) -> list[TextContent]:
    target = Position(x=float(args["x"]), y=float(args["y"]))
    moved = session.update_position(args["node_id"], target)
    return _result(moved=moved)


async def _delete_node(session: CanvasSession, args: dict) -> list[TextContent]:
    removed = await session.delete_node(args["node_id"])
    return _result(removed=removed)


async def _reattach_node(session: CanvasSession, args: dict) -> list[TextContent]:
    changed = await session.reattach_node(args["node_id"], args.get("new_parent_id"))
    return _result(changed=changed)


async def _toggle_collapse(session: CanvasSession, args: dict) -> list[TextContent]:
    collapsed = session.toggle_collapse(args["node_id"])
    return _result(node_id=args["node_id"], collapsed=collapsed)


async def _toggle_child_visibility(session: CanvasSession, args: dict) -> list[TextContent]:
    hidden = session.toggle_child_visibility(args["parent_id"], args["child_id"])
    return _result(child_id=args["child_id"], hidden=hidden)


async def _set_orientation(session: CanvasSession, args: dict) -> list[TextContent]:
    moved = session.set_orientation(args["orientation"])
    return _result(orientation=session.orientation.value, moved=moved)


async def _pan_zoom(session: CanvasSession, args: dict) -> list[TextContent]:
    state = session.pan_zoom(args.get("zoom"), args.get("pan_x"), args.get("pan_y"))
    return _result(canvasState=state.to_wire())


async def _auto_layout(session: CanvasSession, args: dict) -> list[TextContent]:
    return _result(moved=session.auto_layout())


async def _get_tree(session: CanvasSession, args: dict) -> list[TextContent]:
    if args.get("visible_only"):
        nodes = session.visible_nodes()
        connections = session.visible_connections()
    else:
        nodes = list(session.nodes.values())
        connections = session.connections
    return _result(
        nodes=[n.to_wire() for n in nodes],
        connections=[c.to_wire() for c in connections],
        canvasState=session.canvas_state.to_wire(),
        pending=session.pending_count,
        saveStatus=session.status.value,
        unsaved=sorted(session.queue.unsaved),
    )


async def _flush(session: CanvasSession, args: dict) -> list[TextContent]:
    await session.flush()
    return _result(pending=session.pending_count, saveStatus=session.status.value)


_HANDLERS = {
    "create_node": _create_node,
    "update_node": _update_node,
    "move_node": _move_node,
    "delete_node": _delete_node,
    "reattach_node": _reattach_node,
    "toggle_collapse": _toggle_collapse,
    "toggle_child_visibility": _toggle_child_visibility,
    "set_orientation": _set_orientation,
    "pan_zoom": _pan_zoom,
    "auto_layout": _auto_layout,
    "get_tree": _get_tree,
    "flush": _flush,
}


def main():
    """Entry point for the MCP server."""
    import asyncio
    # stdout carries the MCP protocol
    logging.basicConfig(
        level=os.environ.get("IMPACT_CANVAS_LOG_LEVEL", "INFO").upper(),
        format=LOG_FORMAT,
        stream=sys.stderr,
    )
    asyncio.run(_run())


async def _run():
    global _session
    try:
        async with stdio_server() as (read_stream, write_stream):
            await server.run(read_stream, write_stream, server.create_initialization_options())
    finally:
        if _session is not None:
            await _session.close()
            _save(_session)
            if isinstance(_session.collaborator, HttpPersistenceCollaborator):
                await _session.collaborator.close()
            _session = None


if __name__ == "__main__":
    main()
