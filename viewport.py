from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

MIN_SCALE = 0.5
MAX_SCALE = 2.6
NUDGE_STEP = 40.0
ZOOM_STEP = 1.12


def clamp_scale(scale: float) -> float:
    return max(MIN_SCALE, min(MAX_SCALE, scale))


@dataclass(frozen=True)
class ViewTransform:
    x: float = 0.0
    y: float = 0.0
    scale: float = 1.0


class Viewport:
    """Pan and zoom state applied to the whole scene.

    Screen position = model position * scale + (x, y).
    """

    def __init__(self) -> None:
        self.view = ViewTransform()
        self._pan_origin: Optional[tuple[float, float]] = None
        self._pan_start_view: Optional[ViewTransform] = None

    @property
    def panning(self) -> bool:
        return self._pan_origin is not None

    def begin_pan(self, px: float, py: float) -> None:
        self._pan_origin = (px, py)
        self._pan_start_view = self.view

    def pan_to(self, px: float, py: float) -> None:
        if self._pan_origin is None or self._pan_start_view is None:
            return
        ox, oy = self._pan_origin
        start = self._pan_start_view
        self.view = ViewTransform(start.x + (px - ox), start.y + (py - oy), start.scale)

    def end_pan(self) -> None:
        self._pan_origin = None
        self._pan_start_view = None

    def zoom_at(self, mx: float, my: float, factor: float) -> None:
        """Zoom by ``factor`` keeping the point under ``(mx, my)`` fixed."""
        view = self.view
        scale = clamp_scale(view.scale * factor)
        ratio = scale / view.scale
        self.view = ViewTransform(mx - (mx - view.x) * ratio, my - (my - view.y) * ratio, scale)

    def nudge(self, dx: float, dy: float) -> None:
        view = self.view
        self.view = ViewTransform(view.x + dx, view.y + dy, view.scale)

    def zoom_step(self, zoom_in: bool, anchor: tuple[float, float] = (0.0, 0.0)) -> None:
        factor = ZOOM_STEP if zoom_in else 1 / ZOOM_STEP
        self.zoom_at(anchor[0], anchor[1], factor)

    def reset(self) -> None:
        self.end_pan()
        self.view = ViewTransform()

    def to_screen(self, mx: float, my: float) -> tuple[float, float]:
        view = self.view
        return mx * view.scale + view.x, my * view.scale + view.y

    def to_model(self, sx: float, sy: float) -> tuple[float, float]:
        view = self.view
        return (sx - view.x) / view.scale, (sy - view.y) / view.scale
