from __future__ import annotations

import asyncio
from contextlib import contextmanager
import sys
from typing import Awaitable, Optional

from textual import events
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Horizontal, Vertical
from textual.screen import ModalScreen
from textual.widgets import Footer, Header, Input, OptionList, Static
from textual.widgets.option_list import Option, OptionDoesNotExist
from rich.text import Text

from canvas import MindmapCanvas
from expansion import ExpansionController, ExpansionOutcome
from node_models import NodeStore
import ai

DEFAULT_SUBJECT = "Finance"
HINT = (
    "[b]click[/b] a node to read it, [b]double click[/b] or [b]hold[/b] to expand/collapse. "
    "Drag to pan, ctrl+wheel or +/- to zoom, 0 resets."
)


class ModelSelectorScreen(ModalScreen[str | None]):
    """Modal dialog that lets the user pick an OpenRouter model or the offline demo."""

    DEFAULT_CSS = """
    ModelSelectorScreen {
        align: center middle;
    }

    #model-selector-panel {
        min-width: 50;
        max-width: 80;
        height: auto;
        background: $panel;
        border: round $secondary;
        padding: 1 2 2 2;
    }

    #model-selector-title {
        content-align: center middle;
        text-style: bold;
        padding-bottom: 1;
    }

    #model-selector-list {
        border: none;
        background: $surface;
        padding: 0;
    }
    """

    def __init__(self, models: list[str], current_model: str) -> None:
        super().__init__()
        self._models = models
        self._current_model = current_model

    def compose(self) -> ComposeResult:
        with Vertical(id="model-selector-panel"):
            yield Static("Select model", id="model-selector-title")
            yield OptionList(
                *[Option(model, id=model) for model in self._models],
                id="model-selector-list",
            )

    def on_mount(self) -> None:
        option_list = self.query_one("#model-selector-list", OptionList)
        option_list.focus()
        try:
            option_list.highlighted = option_list.get_option_index(self._current_model)
        except OptionDoesNotExist:
            option_list.highlighted = 0 if option_list.option_count else None

    def on_option_list_option_selected(self, event: OptionList.OptionSelected) -> None:
        event.stop()
        selected = event.option_id or str(event.option.prompt)
        self.dismiss(selected)

    def on_key(self, event: events.Key) -> None:
        if event.key == "escape":
            event.stop()
            self.dismiss(None)


class ReaderScreen(ModalScreen[dict[str, str] | None]):
    """Modal prompt for the reader perspective and purpose sent with each expansion."""

    DEFAULT_CSS = """
    ReaderScreen {
        align: center middle;
        background: transparent;
    }

    #reader-panel {
        width: 70;
        height: auto;
        border: round $secondary;
        background: $surface;
        padding: 1 2;
    }
    """

    def __init__(self, perspective: str, purpose: str) -> None:
        super().__init__()
        self._perspective = perspective
        self._purpose = purpose

    def compose(self) -> ComposeResult:
        with Vertical(id="reader-panel"):
            yield Static("Reader perspective / audience")
            yield Input(value=self._perspective, placeholder=ai.DEFAULT_PERSPECTIVE, id="reader-perspective")
            yield Static("Purpose / intent")
            yield Input(value=self._purpose, placeholder=ai.DEFAULT_PURPOSE, id="reader-purpose")

    def on_mount(self) -> None:
        self.query_one("#reader-perspective", Input).focus()

    def on_input_submitted(self, event: Input.Submitted) -> None:
        event.stop()
        if event.input.id == "reader-perspective":
            self.query_one("#reader-purpose", Input).focus()
            return
        self.dismiss(
            {
                "perspective": self.query_one("#reader-perspective", Input).value,
                "purpose": self.query_one("#reader-purpose", Input).value,
            }
        )

    def on_key(self, event: events.Key) -> None:
        if event.key == "escape":
            event.stop()
            self.dismiss(None)


class MindmapApp(App[None]):
    """Textual user interface for the on-demand mind map."""

    TITLE = "Mind-Map Teacher"

    CSS = """
    #mindmap-body {
        height: 1fr;
    }
    #side-panel {
        width: 40;
        padding: 0 1;
        background: #11141a;
    }
    #subject-input {
        margin-bottom: 1;
    }
    #hint {
        color: #9fb0c3;
        margin-bottom: 1;
    }
    #description-title {
        text-style: bold;
        color: #e7ecf2;
    }
    #description-text {
        color: #9fb0c3;
    }
    """

    BINDINGS = [
        Binding("ctrl+q", "quit", "Quit", show=False),
        Binding("q", "quit", "Quit", show=False),
        Binding("g", "focus_subject", "Generate"),
        Binding("d", "demo", "Demo"),
        Binding("r", "edit_reader", "Reader"),
        Binding("m", "choose_model", "Model"),
    ]

    def __init__(self, initial_subject: str | None = None) -> None:
        super().__init__()
        self.title = "Mind-Map Teacher"
        self.store = NodeStore()
        self.service = ai.ExpandService()
        self.controller = ExpansionController(self.store, self.service)
        self.model_choices = list(ai.AVAILABLE_MODELS)
        self.selected_model = ai.get_active_model()
        if self.selected_model not in self.model_choices:
            self.model_choices.append(self.selected_model)
        self._initial_subject = (initial_subject or DEFAULT_SUBJECT).strip() or DEFAULT_SUBJECT
        self._canvas: Optional[MindmapCanvas] = None
        self._tasks: set[asyncio.Task[None]] = set()
        ai.reset_prompt_log()
        ai.reset_connection_log()

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)
        with Horizontal(id="mindmap-body"):
            canvas = MindmapCanvas(self.store, id="mindmap-canvas")
            self._canvas = canvas
            yield canvas
            with Vertical(id="side-panel"):
                yield Input(
                    value=self._initial_subject,
                    placeholder="Subject (e.g., Finance)",
                    id="subject-input",
                )
                yield Static(HINT, id="hint")
                yield Static("", id="description-title")
                yield Static("Select a node to see its description.", id="description-text")
        yield Footer()

    def on_mount(self) -> None:
        self.require_canvas().focus()
        self.start_generate(self._initial_subject)

    def require_canvas(self) -> MindmapCanvas:
        if self._canvas is None:
            raise RuntimeError("Canvas widget not initialised")
        return self._canvas

    @contextmanager
    def _prompt_log_session(self):
        ai.start_prompt_session()
        try:
            yield
        finally:
            ai.finish_prompt_session()

    def _start_task(self, coro: Awaitable[None], *, label: str) -> None:
        task: asyncio.Task[None] = asyncio.create_task(coro)
        self._tasks.add(task)

        def _on_done(completed: asyncio.Task[None]) -> None:
            self._tasks.discard(completed)
            if completed.cancelled():
                return
            exc = completed.exception()
            if exc is not None:
                self.handle_ai_error(label, exc)

        task.add_done_callback(_on_done)

    def handle_ai_error(self, action_label: str, exc: BaseException) -> None:
        """Provide a consistent error experience for AI failures."""
        self.bell()
        self.show_status(f"{action_label.capitalize()} failed: {exc}")

    def start_generate(self, subject: str) -> None:
        self._start_task(self._generate(subject), label="generate")

    async def _generate(self, subject: str) -> None:
        canvas = self.require_canvas()
        self.show_status(f"Generating {subject.strip() or DEFAULT_SUBJECT}…")
        with self._prompt_log_session():
            root = await self.controller.generate(subject)
        canvas.reset_for_new_tree()
        self._show_description(root.id)
        self.show_status(f"Generated {root.label}.")

    def _show_description(self, node_id: Optional[str]) -> None:
        node = self.store.get(node_id) if node_id else None
        title = self.query_one("#description-title", Static)
        body = self.query_one("#description-text", Static)
        if node is None:
            title.update("")
            body.update("Select a node to see its description.")
            return
        title.update(Text(node.label))
        body.update(Text(node.description or "No description yet."))

    def on_input_submitted(self, event: Input.Submitted) -> None:
        if event.input.id != "subject-input":
            return
        event.stop()
        self.start_generate(event.value)
        self.require_canvas().focus()

    def on_mindmap_canvas_node_activated(self, message: MindmapCanvas.NodeActivated) -> None:
        message.stop()
        canvas = self.require_canvas()
        if message.intent == "select":
            canvas.select(message.node_id)
            self._show_description(message.node_id)
            return
        if self.controller.busy:
            self.bell()
            self.show_status("An expansion is already running.")
            return
        canvas.select(message.node_id)
        self._show_description(message.node_id)
        self._start_task(self._toggle(message.node_id), label="expand")

    async def _toggle(self, node_id: str) -> None:
        canvas = self.require_canvas()
        node = self.store.get(node_id)
        if node is None:
            return
        label = node.label
        if not node.expanded:
            canvas.mark_pending(node_id)
            self.show_status(f"Expanding {label}…")
        try:
            with self._prompt_log_session():
                outcome = await self.controller.toggle(node_id)
        finally:
            canvas.clear_pending(node_id)
        self._report(outcome, label)

    def _report(self, outcome: ExpansionOutcome, label: str) -> None:
        canvas = self.require_canvas()
        if outcome.status == "failed":
            self.bell()
            self.show_status(f"Expanding {label} failed: {outcome.detail}")
        elif outcome.status == "expanded":
            self.show_status(f"Expanded {label}.")
        elif outcome.status == "collapsed":
            self.show_status(f"Collapsed {label}.")
        elif outcome.status == "busy":
            self.bell()
            self.show_status("An expansion is already running.")
        if canvas.selected_id is not None and canvas.selected_id not in self.store:
            canvas.select(self.store.root.id if self.store.root else None)
        self._show_description(canvas.selected_id)
        canvas.refresh()

    def action_focus_subject(self) -> None:
        self.query_one("#subject-input", Input).focus()

    def action_demo(self) -> None:
        self._apply_model(ai.OFFLINE_MODEL)
        self.query_one("#subject-input", Input).value = DEFAULT_SUBJECT
        self.start_generate(DEFAULT_SUBJECT)

    def _apply_model(self, model: str) -> None:
        self.selected_model = model
        ai.set_active_model(model)
        # A fresh model choice gets a fresh chance at the live service.
        self.service.degraded = False

    def action_choose_model(self) -> None:
        if not self.model_choices:
            self.bell()
            self.show_status("No models configured.")
            return

        def apply_selection(selection: str | None) -> None:
            if not selection or selection == self.selected_model:
                self.show_status(f"Model unchanged ({self.selected_model}).")
                return
            if selection not in self.model_choices:
                self.model_choices.append(selection)
            self._apply_model(selection)
            self.show_status(f"Model set to {selection}.")

        self.push_screen(
            ModelSelectorScreen(self.model_choices, self.selected_model),
            apply_selection,
        )

    def action_edit_reader(self) -> None:
        def apply_reader(result: dict[str, str] | None) -> None:
            if not isinstance(result, dict):
                self.show_status("Reader unchanged.")
                return
            self.controller.perspective = result.get("perspective", "").strip() or ai.DEFAULT_PERSPECTIVE
            self.controller.purpose = result.get("purpose", "").strip() or ai.DEFAULT_PURPOSE
            self.show_status(f"Reader set to {self.controller.perspective}.")

        self.push_screen(
            ReaderScreen(self.controller.perspective, self.controller.purpose),
            apply_reader,
        )

    def _mode_label(self) -> str:
        if self.selected_model == ai.OFFLINE_MODEL:
            return "demo"
        if not self.service.uses_network:
            return "degraded"
        return self.selected_model

    def show_status(self, message: str | None = None) -> None:
        scale = self.require_canvas().viewport.view.scale if self._canvas else 1.0
        composed = message or "Ready"
        self.sub_title = f"{composed} | Model: {self._mode_label()} | Nodes: {len(self.store)} | Zoom: {scale:.2f}"


def main() -> None:
    initial_subject = " ".join(sys.argv[1:]) or None
    MindmapApp(initial_subject).run()


if __name__ == "__main__":
    main()
