"""Tidy left-to-right layout for the mind map.

Each node receives a vertical band proportional to the number of leaves
beneath it; children share their parent's band in insertion order.
"""

from __future__ import annotations

from dataclasses import replace
from typing import TYPE_CHECKING, Dict, Iterable, Mapping, Optional

if TYPE_CHECKING:
    from node_models import Edge, MindmapNode

BASE_X = 140
X_STEP = 240
LEAF_GAP = 96
TOP_PAD = 60
ROOT_H = 48
H = 42
MIN_WIDTH = 140
MAX_WIDTH = 260


def measure_width(label: str) -> float:
    return max(MIN_WIDTH, min(MAX_WIDTH, 28 + max(10, len(label)) * 8))


def find_root(nodes: Mapping[str, "MindmapNode"]) -> Optional["MindmapNode"]:
    for node in nodes.values():
        if node.parent_id is None:
            return node
    return None


def leaf_counts(nodes: Mapping[str, "MindmapNode"], root_id: str) -> Dict[str, int]:
    """Leaf count for every node reachable from ``root_id``.

    A childless node counts as one leaf so every band is at least ``LEAF_GAP``.
    """
    counts: dict[str, int] = {}

    def count(node_id: str) -> int:
        node = nodes.get(node_id)
        if node is None:
            return 0
        if not node.child_ids:
            counts[node_id] = 1
            return 1
        total = sum(count(child_id) for child_id in node.child_ids)
        counts[node_id] = max(1, total)
        return counts[node_id]

    count(root_id)
    return counts


def band_height(leaves: int) -> float:
    return max(1, leaves) * LEAF_GAP


def layout(
    nodes: Mapping[str, "MindmapNode"],
    edges: Iterable["Edge"] = (),
) -> Dict[str, "MindmapNode"]:
    """Return copies of ``nodes`` with ``level``, ``x``, ``y``, ``w`` and ``h`` assigned.

    The input mapping is left untouched. Without a root the copies keep
    their previous geometry.
    """
    placed = {node_id: replace(node, child_ids=list(node.child_ids)) for node_id, node in nodes.items()}
    root = find_root(placed)
    if root is None:
        return placed
    counts = leaf_counts(placed, root.id)

    def place(node_id: str, level: int, top_y: float) -> float:
        node = placed.get(node_id)
        if node is None:
            return 0
        band = band_height(counts.get(node_id, 1))
        node.level = level
        node.w = measure_width(node.label)
        node.h = ROOT_H if level == 0 else H
        node.x = BASE_X + level * X_STEP
        node.y = top_y + band / 2
        cursor = top_y
        for child_id in node.child_ids:
            cursor += place(child_id, level + 1, cursor)
        return band

    place(root.id, 0, TOP_PAD)
    return placed
