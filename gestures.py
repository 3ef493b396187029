from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, Literal, Optional

DOUBLE_PRESS_WINDOW = 0.3
LONG_PRESS_DELAY = 0.5
# Pointer travel (in screen cells) after which a press turns into a pan.
DRAG_THRESHOLD = 1.0

Intent = Literal["select", "toggle"]


@dataclass
class _Press:
    node_id: Optional[str]
    x: float
    y: float
    started: float
    long_fired: bool = False
    dragging: bool = False


class GestureDisambiguator:
    """Classifies pointer activity into select, toggle and pan gestures.

    A single activation selects a node, a second activation on the same node
    inside ``double_press_window`` toggles it. Holding the pointer down on a
    node for ``long_press_delay`` toggles it too, and the release that ends
    such a press does not select.
    """

    def __init__(
        self,
        *,
        double_press_window: float = DOUBLE_PRESS_WINDOW,
        long_press_delay: float = LONG_PRESS_DELAY,
        drag_threshold: float = DRAG_THRESHOLD,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.double_press_window = double_press_window
        self.long_press_delay = long_press_delay
        self.drag_threshold = drag_threshold
        self._clock = clock
        self._last_activation: Dict[str, float] = {}
        self._press: Optional[_Press] = None

    def _now(self, now: Optional[float]) -> float:
        return self._clock() if now is None else now

    def activate(self, node_id: str, now: Optional[float] = None) -> Intent:
        moment = self._now(now)
        last = self._last_activation.get(node_id)
        delta = math.inf if last is None else moment - last
        if delta < self.double_press_window:
            # Consumed: a third quick press starts a new pair.
            self._last_activation.pop(node_id, None)
            return "toggle"
        self._last_activation[node_id] = moment
        return "select"

    @property
    def pressing(self) -> bool:
        return self._press is not None

    @property
    def dragging(self) -> bool:
        return self._press is not None and self._press.dragging

    @property
    def pressed_node(self) -> Optional[str]:
        return self._press.node_id if self._press else None

    def press(self, node_id: Optional[str], x: float, y: float, now: Optional[float] = None) -> None:
        """Pointer went down, on ``node_id`` or on empty canvas when ``None``."""
        self._press = _Press(node_id, x, y, self._now(now))

    def fire_long_press(self) -> Optional[str]:
        """The long-press timer elapsed while the pointer is still held down."""
        press = self._press
        if press is None or press.node_id is None or press.long_fired or press.dragging:
            return None
        press.long_fired = True
        return press.node_id

    def move(self, x: float, y: float) -> bool:
        """Track pointer travel; return True once the press has become a drag."""
        press = self._press
        if press is None:
            return False
        if not press.dragging and not press.long_fired:
            if math.hypot(x - press.x, y - press.y) >= self.drag_threshold:
                press.dragging = True
        return press.dragging

    def release(self, now: Optional[float] = None) -> tuple[Optional[str], Optional[Intent]]:
        """Pointer went up; return the node and intent of the finished gesture."""
        press = self._press
        self._press = None
        if press is None or press.node_id is None:
            return None, None
        if press.long_fired or press.dragging:
            return press.node_id, None
        return press.node_id, self.activate(press.node_id, now)

    def cancel(self) -> None:
        self._press = None
