from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional

import layout


class NotFound(KeyError):
    """Raised when an operation targets a node id the store does not hold."""


class RootExists(ValueError):
    """Raised when a second root is requested without clearing the store."""


@dataclass
class MindmapNode:
    id: str
    label: str
    description: str = ""
    parent_id: Optional[str] = None
    child_ids: List[str] = field(default_factory=list)
    expanded: bool = False
    # Geometry below is owned by the layout pass.
    level: int = 0
    x: float = layout.BASE_X
    y: float = 0.0
    w: float = layout.MIN_WIDTH
    h: float = layout.H


@dataclass(frozen=True)
class Edge:
    from_id: str
    to_id: str


_SEPARATORS_RE = re.compile(r"[\s\-_/\\.,;:&+|]+")
_NON_ALNUM_RE = re.compile(r"[^0-9a-z ]+")


def canonical_label(label: str) -> str:
    """Normalise a label for duplicate comparison ("Start-Ups!" -> "start ups")."""
    text = _SEPARATORS_RE.sub(" ", label.lower())
    text = _NON_ALNUM_RE.sub("", text)
    return " ".join(text.split())


def _slug(label: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", label.lower()).strip("-")
    return slug or "n"


def _base36(value: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    if value == 0:
        return "0"
    out: list[str] = []
    while value:
        value, rem = divmod(value, 36)
        out.append(digits[rem])
    return "".join(reversed(out))


class NodeStore:
    """Owns the mind map nodes and their parent/child links.

    Every structural mutation re-runs the layout over the whole tree, so
    geometry read from the store always reflects the current shape.
    """

    def __init__(self) -> None:
        self.nodes: Dict[str, MindmapNode] = {}
        self.edges: List[Edge] = []
        self._counter = 0

    def __contains__(self, node_id: object) -> bool:
        return node_id in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    def get(self, node_id: str) -> Optional[MindmapNode]:
        return self.nodes.get(node_id)

    def require(self, node_id: str) -> MindmapNode:
        node = self.nodes.get(node_id)
        if node is None:
            raise NotFound(node_id)
        return node

    @property
    def root(self) -> Optional[MindmapNode]:
        for node in self.nodes.values():
            if node.parent_id is None:
                return node
        return None

    def clear(self) -> None:
        # The id counter survives so ids stay unique for the whole session.
        self.nodes.clear()
        self.edges.clear()

    def _next_id(self, label: str) -> str:
        self._counter += 1
        return f"{_slug(label)}-{_base36(self._counter)}"

    def create_root(self, label: str, description: str = "") -> MindmapNode:
        if self.root is not None:
            raise RootExists("store already has a root; clear it first")
        node = MindmapNode(id=self._next_id(label), label=label, description=description)
        self.nodes[node.id] = node
        self.relayout()
        return node

    def add_child(self, parent_id: str, label: str, description: str = "") -> MindmapNode:
        parent = self.require(parent_id)
        node = MindmapNode(
            id=self._next_id(label),
            label=label,
            description=description,
            parent_id=parent_id,
        )
        self.nodes[node.id] = node
        parent.child_ids.append(node.id)
        self.edges.append(Edge(parent_id, node.id))
        self.relayout()
        return node

    def remove_subtree(self, node_id: str) -> None:
        node = self.nodes.get(node_id)
        if node is None:
            return
        removed: set[str] = set()

        def remove(current_id: str) -> None:
            current = self.nodes.get(current_id)
            if current is None:
                return
            for child_id in list(current.child_ids):
                remove(child_id)
            del self.nodes[current_id]
            removed.add(current_id)

        remove(node_id)
        if node.parent_id is not None:
            parent = self.nodes.get(node.parent_id)
            if parent is not None and node_id in parent.child_ids:
                parent.child_ids.remove(node_id)
        self.edges = [
            edge for edge in self.edges if edge.from_id not in removed and edge.to_id not in removed
        ]
        self.relayout()

    def remove_children(self, node_id: str) -> None:
        node = self.nodes.get(node_id)
        if node is None:
            return
        for child_id in list(node.child_ids):
            self.remove_subtree(child_id)

    def set_expanded(self, node_id: str, expanded: bool) -> None:
        node = self.nodes.get(node_id)
        if node is not None:
            node.expanded = expanded

    def set_description(self, node_id: str, text: str) -> None:
        node = self.nodes.get(node_id)
        if node is not None:
            node.description = text

    def relayout(self) -> None:
        placed = layout.layout(self.nodes, self.edges)
        for node_id, geometry in placed.items():
            node = self.nodes[node_id]
            node.level = geometry.level
            node.x, node.y = geometry.x, geometry.y
            node.w, node.h = geometry.w, geometry.h

    def ancestry(self, node_id: str) -> List[MindmapNode]:
        """Return the nodes from the root down to ``node_id`` (inclusive)."""
        path: list[MindmapNode] = []
        current = self.nodes.get(node_id)
        seen: set[str] = set()
        while current is not None and current.id not in seen:
            seen.add(current.id)
            path.append(current)
            current = self.nodes.get(current.parent_id) if current.parent_id else None
        return list(reversed(path))

    def walk(self) -> Iterator[MindmapNode]:
        """Yield nodes in pre-order starting at the root."""
        root = self.root
        if root is None:
            return
        stack = [root.id]
        while stack:
            node = self.nodes.get(stack.pop())
            if node is None:
                continue
            yield node
            stack.extend(reversed(node.child_ids))
