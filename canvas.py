from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, Mapping, Optional

from rich.text import Text
from textual import events
from textual.binding import Binding
from textual.message import Message
from textual.timer import Timer
from textual.widget import Widget

from gestures import GestureDisambiguator, Intent
from node_models import Edge, MindmapNode, NodeStore
from viewport import NUDGE_STEP, ZOOM_STEP, Viewport

# Model units covered by one terminal cell.
CELL_WIDTH = 8.0
CELL_HEIGHT = 16.0

BOX_STYLE = "#2f3b52 on #1b2333"
LABEL_STYLE = "#e7ecf2 on #1b2333"
SELECTED_BOX_STYLE = "bold #3b6aff on #1b2333"
SELECTED_LABEL_STYLE = "bold #ffffff on #263041"
MARKER_STYLE = "#b6c7dd on #1b2333"
EDGE_STYLE = "#3b6aff"
SPINNER_FRAMES = [".", "..", "..."]


@dataclass(frozen=True)
class Region:
    left: int
    top: int
    right: int
    bottom: int

    @property
    def middle(self) -> int:
        return (self.top + self.bottom) // 2

    def contains(self, col: int, row: int) -> bool:
        return self.left <= col <= self.right and self.top <= row <= self.bottom


class SceneRaster:
    """A clipped character grid with one rich style per cell."""

    def __init__(self, width: int, height: int) -> None:
        self.width = max(width, 0)
        self.height = max(height, 0)
        self._chars = [[" "] * self.width for _ in range(self.height)]
        self._styles: list[list[Optional[str]]] = [[None] * self.width for _ in range(self.height)]

    def put(self, col: int, row: int, char: str, style: Optional[str] = None) -> None:
        if 0 <= col < self.width and 0 <= row < self.height:
            self._chars[row][col] = char
            self._styles[row][col] = style

    def hline(self, row: int, start: int, end: int, style: Optional[str] = None) -> None:
        for col in range(min(start, end), max(start, end) + 1):
            self.put(col, row, "─", style)

    def vline(self, col: int, start: int, end: int, style: Optional[str] = None) -> None:
        for row in range(min(start, end), max(start, end) + 1):
            self.put(col, row, "│", style)

    def write(self, col: int, row: int, text: str, style: Optional[str] = None) -> None:
        for offset, char in enumerate(text):
            self.put(col + offset, row, char, style)

    def to_text(self) -> Text:
        lines: list[Text] = []
        for chars, styles in zip(self._chars, self._styles):
            line = Text(no_wrap=True, overflow="crop")
            run_start = 0
            for index in range(1, self.width + 1):
                if index == self.width or styles[index] != styles[run_start]:
                    line.append("".join(chars[run_start:index]), style=styles[run_start] or "")
                    run_start = index
            lines.append(line)
        text = Text("\n", no_wrap=True, overflow="crop").join(lines)
        text.no_wrap = True
        return text


def node_region(node: MindmapNode, viewport: Viewport) -> Region:
    scale = viewport.view.scale
    cx, cy = viewport.to_screen(node.x, node.y)
    half_w = node.w * scale / 2
    half_h = node.h * scale / 2
    left = math.floor((cx - half_w) / CELL_WIDTH)
    right = max(left + 4, math.ceil((cx + half_w) / CELL_WIDTH) - 1)
    top = round((cy - half_h) / CELL_HEIGHT)
    bottom = max(top + 2, round((cy + half_h) / CELL_HEIGHT))
    return Region(left, top, right, bottom)


def _draw_edge(raster: SceneRaster, parent: Region, child: Region) -> None:
    x1, y1 = parent.right + 1, parent.middle
    x2, y2 = child.left - 1, child.middle
    if x2 <= x1:
        raster.vline(x1, y1, y2, EDGE_STYLE)
        return
    mid = (x1 + x2) // 2
    raster.hline(y1, x1, mid, EDGE_STYLE)
    raster.hline(y2, mid, x2, EDGE_STYLE)
    if y1 == y2:
        return
    raster.vline(mid, y1, y2, EDGE_STYLE)
    down = y2 > y1
    raster.put(mid, y1, "╮" if down else "╯", EDGE_STYLE)
    raster.put(mid, y2, "╰" if down else "╭", EDGE_STYLE)


def _draw_node(
    raster: SceneRaster,
    node: MindmapNode,
    region: Region,
    *,
    selected: bool,
    marker: str,
) -> None:
    box_style = SELECTED_BOX_STYLE if selected else BOX_STYLE
    label_style = SELECTED_LABEL_STYLE if selected else LABEL_STYLE
    fill_style = label_style
    for row in range(region.top + 1, region.bottom):
        raster.write(region.left + 1, row, " " * (region.right - region.left - 1), fill_style)
        raster.put(region.left, row, "│", box_style)
        raster.put(region.right, row, "│", box_style)
    raster.hline(region.top, region.left + 1, region.right - 1, box_style)
    raster.hline(region.bottom, region.left + 1, region.right - 1, box_style)
    raster.put(region.left, region.top, "╭", box_style)
    raster.put(region.right, region.top, "╮", box_style)
    raster.put(region.left, region.bottom, "╰", box_style)
    raster.put(region.right, region.bottom, "╯", box_style)
    inner = region.right - region.left - 1
    label = node.label if len(node.label) <= inner else node.label[: max(inner - 1, 0)] + "…"
    raster.write(region.left + 1 + (inner - len(label)) // 2, region.middle, label, label_style)
    if marker:
        raster.write(region.right - 1 - len(marker), region.top, marker, MARKER_STYLE)


def render_scene(
    nodes: Mapping[str, MindmapNode],
    edges: Iterable[Edge],
    viewport: Viewport,
    width: int,
    height: int,
    *,
    selected_id: Optional[str] = None,
    pending: Mapping[str, str] | None = None,
) -> tuple[Text, dict[str, Region]]:
    """Rasterize the laid-out tree; return the text and each node's cell region.

    ``pending`` maps node ids to the marker shown while they expand.
    """
    raster = SceneRaster(width, height)
    regions = {node_id: node_region(node, viewport) for node_id, node in nodes.items()}
    for edge in edges:
        parent = regions.get(edge.from_id)
        child = regions.get(edge.to_id)
        if parent is not None and child is not None:
            _draw_edge(raster, parent, child)
    pending = pending or {}
    for node_id, node in nodes.items():
        if node_id in pending:
            marker = pending[node_id]
        else:
            marker = "−" if node.expanded else "+"
        _draw_node(raster, node, regions[node_id], selected=node_id == selected_id, marker=marker)
    return raster.to_text(), regions


class MindmapCanvas(Widget, can_focus=True):
    """Pan/zoom view of the mind map that reports node gestures."""

    DEFAULT_CSS = """
    MindmapCanvas {
        background: #0f1320;
        width: 1fr;
        height: 1fr;
    }
    """

    BINDINGS = [
        Binding("left", "nudge(1, 0)", "Pan", show=False),
        Binding("right", "nudge(-1, 0)", "Pan", show=False),
        Binding("up", "nudge(0, 1)", "Pan", show=False),
        Binding("down", "nudge(0, -1)", "Pan", show=False),
        Binding("+", "zoom(1)", "Zoom in"),
        Binding("=", "zoom(1)", "Zoom in", show=False),
        Binding("-", "zoom(-1)", "Zoom out"),
        Binding("0", "reset_view", "Reset view"),
        Binding("]", "select_step(1)", "Next"),
        Binding("[", "select_step(-1)", "Prev", show=False),
        Binding("enter", "toggle_selected", "Expand/collapse"),
    ]

    class NodeActivated(Message):
        """A gesture on a node resolved to ``select`` or ``toggle``."""

        def __init__(self, canvas: "MindmapCanvas", node_id: str, intent: Intent) -> None:
            super().__init__()
            self.canvas = canvas
            self.node_id = node_id
            self.intent = intent

    def __init__(self, store: NodeStore, *, id: str | None = None) -> None:
        super().__init__(id=id)
        self.store = store
        self.viewport = Viewport()
        self.gestures = GestureDisambiguator()
        self.selected_id: Optional[str] = None
        self.pending: dict[str, str] = {}
        self._regions: dict[str, Region] = {}
        self._long_press_timer: Optional[Timer] = None
        self._spinner_timer: Optional[Timer] = None
        self._spinner_index = 0

    def render(self) -> Text:
        text, self._regions = render_scene(
            self.store.nodes,
            self.store.edges,
            self.viewport,
            self.size.width,
            self.size.height,
            selected_id=self.selected_id,
            pending=self.pending,
        )
        return text

    def reset_for_new_tree(self) -> None:
        """Forget gesture history and view state for a freshly generated tree."""
        self._stop_long_press()
        self.gestures = GestureDisambiguator()
        self.viewport.reset()
        self.pending.clear()
        self.selected_id = self.store.root.id if self.store.root else None
        self.refresh()

    @staticmethod
    def _to_units(col: float, row: float) -> tuple[float, float]:
        return (col + 0.5) * CELL_WIDTH, (row + 0.5) * CELL_HEIGHT

    def node_at(self, col: int, row: int) -> Optional[str]:
        for node_id, region in reversed(list(self._regions.items())):
            if node_id in self.store and region.contains(col, row):
                return node_id
        return None

    def select(self, node_id: Optional[str]) -> None:
        self.selected_id = node_id
        self.refresh()

    def mark_pending(self, node_id: str) -> None:
        self.pending[node_id] = SPINNER_FRAMES[0]
        if self._spinner_timer is None:
            self._spinner_timer = self.set_interval(0.25, self._tick_spinner)
        self.refresh()

    def clear_pending(self, node_id: str) -> None:
        self.pending.pop(node_id, None)
        if not self.pending and self._spinner_timer is not None:
            self._spinner_timer.stop()
            self._spinner_timer = None
        self.refresh()

    def _tick_spinner(self) -> None:
        self._spinner_index = (self._spinner_index + 1) % len(SPINNER_FRAMES)
        for node_id in self.pending:
            self.pending[node_id] = SPINNER_FRAMES[self._spinner_index]
        self.refresh()

    def _emit(self, node_id: Optional[str], intent: Optional[Intent]) -> None:
        if node_id is not None and intent is not None:
            self.post_message(self.NodeActivated(self, node_id, intent))

    def _stop_long_press(self) -> None:
        if self._long_press_timer is not None:
            self._long_press_timer.stop()
            self._long_press_timer = None

    def _long_press_elapsed(self) -> None:
        self._long_press_timer = None
        self._emit(self.gestures.fire_long_press(), "toggle")

    def on_mouse_down(self, event: events.MouseDown) -> None:
        if event.button != 1:
            return
        event.stop()
        self.focus()
        node_id = self.node_at(event.x, event.y)
        self.gestures.press(node_id, event.x, event.y)
        self.viewport.begin_pan(*self._to_units(event.x, event.y))
        self.capture_mouse()
        self._stop_long_press()
        if node_id is not None:
            self._long_press_timer = self.set_timer(self.gestures.long_press_delay, self._long_press_elapsed)

    def on_mouse_move(self, event: events.MouseMove) -> None:
        if not self.gestures.pressing:
            return
        if self.gestures.move(event.x, event.y):
            self._stop_long_press()
            self.viewport.pan_to(*self._to_units(event.x, event.y))
            self.refresh()

    def on_mouse_up(self, event: events.MouseUp) -> None:
        if not self.gestures.pressing:
            return
        event.stop()
        self.release_mouse()
        self._stop_long_press()
        self.viewport.end_pan()
        node_id, intent = self.gestures.release()
        self._emit(node_id, intent)

    def _wheel(self, event: events.MouseEvent, direction: int) -> None:
        event.stop()
        if event.ctrl or event.meta:
            mx, my = self._to_units(event.x, event.y)
            self.viewport.zoom_at(mx, my, ZOOM_STEP if direction > 0 else 1 / ZOOM_STEP)
        else:
            self.viewport.nudge(0, direction * NUDGE_STEP)
        self.refresh()

    def on_mouse_scroll_up(self, event: events.MouseScrollUp) -> None:
        self._wheel(event, 1)

    def on_mouse_scroll_down(self, event: events.MouseScrollDown) -> None:
        self._wheel(event, -1)

    def action_nudge(self, dx: int, dy: int) -> None:
        self.viewport.nudge(dx * NUDGE_STEP, dy * NUDGE_STEP)
        self.refresh()

    def action_zoom(self, direction: int) -> None:
        anchor = (self.size.width * CELL_WIDTH / 2, self.size.height * CELL_HEIGHT / 2)
        self.viewport.zoom_step(direction > 0, anchor)
        self.refresh()

    def action_reset_view(self) -> None:
        self.viewport.reset()
        self.refresh()

    def action_select_step(self, step: int) -> None:
        order = [node.id for node in self.store.walk()]
        if not order:
            return
        if self.selected_id in order:
            index = (order.index(self.selected_id) + step) % len(order)
        else:
            index = 0
        self._emit(order[index], "select")

    def action_toggle_selected(self) -> None:
        if self.selected_id is not None and self.selected_id in self.store:
            self._emit(self.selected_id, "toggle")
