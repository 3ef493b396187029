from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, Literal, Union

import ai
from node_models import MindmapNode, NodeStore, canonical_label

ROOT_DESCRIPTION_FAILED = "Loading description failed. Please try again."

ExpandCallable = Callable[[ai.ExpansionRequest], Awaitable[ai.ExpansionResult]]


class NodeState(str, Enum):
    COLLAPSED = "collapsed"
    EXPANDING = "expanding"
    EXPANDED = "expanded"
    COLLAPSING = "collapsing"


@dataclass(frozen=True)
class Fetched:
    result: ai.ExpansionResult


@dataclass(frozen=True)
class FetchFailed:
    error: ai.ExpansionFailed


FetchOutcome = Union[Fetched, FetchFailed]


@dataclass(frozen=True)
class ExpansionOutcome:
    node_id: str
    status: Literal["expanded", "collapsed", "failed", "busy", "missing"]
    detail: str = ""

    @property
    def changed(self) -> bool:
        return self.status in ("expanded", "collapsed")


class ExpansionController:
    """Expands nodes on demand and collapses them again.

    A toggle on a collapsed node flips its ``expanded`` flag at once, asks
    the expand-service for three subcategories and either attaches them or
    rolls the flag back. A toggle on an expanded node drops its subtree
    without a service call. Only one expansion runs at a time.
    """

    def __init__(
        self,
        store: NodeStore,
        service: ExpandCallable,
        *,
        perspective: str = ai.DEFAULT_PERSPECTIVE,
        purpose: str = ai.DEFAULT_PURPOSE,
    ) -> None:
        self.store = store
        self.service = service
        self.perspective = perspective
        self.purpose = purpose
        self.busy = False
        self._states: Dict[str, NodeState] = {}

    def state(self, node_id: str) -> NodeState:
        state = self._states.get(node_id)
        if state is not None:
            return state
        node = self.store.get(node_id)
        if node is not None and node.expanded:
            return NodeState.EXPANDED
        return NodeState.COLLAPSED

    def reset(self) -> None:
        self.busy = False
        self._states.clear()

    def build_request(self, node_id: str) -> ai.ExpansionRequest:
        ancestry = self.store.ancestry(node_id)
        if not ancestry:
            raise KeyError(node_id)
        node = ancestry[-1]
        exclude: list[str] = []
        for item in ancestry:
            key = canonical_label(item.label)
            if key and key not in exclude:
                exclude.append(key)
        return ai.ExpansionRequest(
            subject=node.label,
            context=" > ".join(item.label for item in ancestry),
            exclude=tuple(exclude),
            path=tuple(ai.Subcategory(item.label, item.description) for item in ancestry),
            perspective=self.perspective,
            purpose=self.purpose,
        )

    async def _fetch(self, req: ai.ExpansionRequest) -> FetchOutcome:
        try:
            return Fetched(await self.service(req))
        except ai.ExpansionFailed as exc:
            return FetchFailed(exc)
        except Exception as exc:
            # Any other service error still ends in a rollback.
            failure = ai.ExpansionFailed(f"{type(exc).__name__}: {exc}")
            failure.__cause__ = exc
            return FetchFailed(failure)

    async def toggle(self, node_id: str) -> ExpansionOutcome:
        node = self.store.get(node_id)
        if node is None:
            return ExpansionOutcome(node_id, "missing")
        if self.busy:
            return ExpansionOutcome(node_id, "busy")
        if node.expanded:
            return self._collapse(node)
        return await self._expand(node)

    def _collapse(self, node: MindmapNode) -> ExpansionOutcome:
        self._states[node.id] = NodeState.COLLAPSING
        self.store.remove_children(node.id)
        self.store.set_expanded(node.id, False)
        self._states[node.id] = NodeState.COLLAPSED
        return ExpansionOutcome(node.id, "collapsed")

    async def _expand(self, node: MindmapNode) -> ExpansionOutcome:
        node_id = node.id
        req = self.build_request(node_id)
        self.busy = True
        self._states[node_id] = NodeState.EXPANDING
        self.store.set_expanded(node_id, True)
        try:
            outcome = await self._fetch(req)
        finally:
            self.busy = False

        if node_id not in self.store:
            # Removed while the call was in flight; nothing left to update.
            self._states.pop(node_id, None)
            return ExpansionOutcome(node_id, "missing")

        if isinstance(outcome, FetchFailed):
            self.store.set_expanded(node_id, False)
            self._states[node_id] = NodeState.COLLAPSED
            detail = f"{type(outcome.error).__name__}: {outcome.error}"
            ai.log_connection_event("ROLLBACK", ai.get_active_model(), f"{req.subject}: {detail}")
            return ExpansionOutcome(node_id, "failed", detail)

        result = outcome.result
        if result.description:
            self.store.set_description(node_id, result.description)
        for subcategory in result.subcategories[: ai.SUBCATEGORY_COUNT]:
            self.store.add_child(node_id, subcategory.name, subcategory.description)
        self._states[node_id] = NodeState.EXPANDED
        return ExpansionOutcome(node_id, "expanded")

    async def generate(self, subject: str) -> MindmapNode:
        """Replace the whole tree with a fresh root for ``subject``."""
        label = subject.strip() or "Finance"
        self.store.clear()
        self.reset()
        req = ai.ExpansionRequest(
            subject=label,
            context=label,
            exclude=(canonical_label(label),),
            path=(ai.Subcategory(label),),
            perspective=self.perspective,
            purpose=self.purpose,
        )
        self.busy = True
        try:
            outcome = await self._fetch(req)
        finally:
            self.busy = False
        if isinstance(outcome, FetchFailed):
            ai.log_connection_event("FAIL", ai.get_active_model(), f"root description for {label}: {outcome.error}")
            description = ROOT_DESCRIPTION_FAILED
        else:
            description = outcome.result.description
        # A generate that raced another one must still leave a single root.
        self.store.clear()
        return self.store.create_root(label, description)
