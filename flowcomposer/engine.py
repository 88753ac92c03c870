# flowcomposer/engine.py
import asyncio
import inspect
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set

from .dispatch import AuthorizeHook, Dispatcher, ProviderFn
from .enrichment import ExampleOutputPublisher, ExampleOutputFn, UploadFn
from .errors import FlowComposerError
from .graph import levels, patch_all, patch_node_data
from .handlers import HANDLERS, NodeContext
from .models import Edge, ExecutionStatus, FlowDocument, FlowRunState, Node
from .registry import EXECUTIONS, ExecutionRegistry
from .runs import RunStore
from .state import ComposerState, DraftStore, NodesUpdater

logger = logging.getLogger(__name__)

# In-memory run history (replace with DB if needed)
RUNS: Dict[str, FlowRunState] = {}


@dataclass
class ExecutionCallbacks:
    on_started: Optional[Callable[[], Any]] = None
    on_success: Optional[Callable[[], Any]] = None
    on_error: Optional[Callable[[], Any]] = None  # finished, but some node failed
    on_failed: Optional[Callable[[BaseException], Any]] = None
    on_failed_with_error: Optional[Callable[[str], Any]] = None


async def _notify(callback: Optional[Callable], *args) -> None:
    """Call a callback that may be sync or async."""
    if callback is None:
        return
    res = callback(*args)
    if inspect.iscoroutine(res):
        await res


def _now() -> datetime:
    return datetime.now(timezone.utc)


class FlowEngine:
    def __init__(
        self,
        composer: ComposerState,
        providers: Dict[str, ProviderFn],
        run_store: Optional[RunStore] = None,
        drafts: Optional[DraftStore] = None,
        upload: Optional[UploadFn] = None,
        update_example_output: Optional[ExampleOutputFn] = None,
        authorize: Optional[AuthorizeHook] = None,
        registry: Optional[ExecutionRegistry] = None,
        publisher: Optional[ExampleOutputPublisher] = None,
    ):
        self.composer = composer
        self.dispatcher = Dispatcher(providers, run_store=run_store, authorize=authorize)
        self.drafts = drafts
        self.registry = registry if registry is not None else EXECUTIONS
        self.runs = RUNS
        if publisher is None and upload is not None and update_example_output is not None:
            publisher = ExampleOutputPublisher(upload, update_example_output)
        self.publisher = publisher

    @property
    def providers(self) -> Dict[str, ProviderFn]:
        return self.dispatcher.providers

    async def execute_flow(self, flow_id: str, callbacks: Optional[ExecutionCallbacks] = None, run_id: Optional[str] = None) -> FlowRunState:
        callbacks = callbacks or ExecutionCallbacks()
        run_state = FlowRunState(run_id=run_id or str(uuid.uuid4()), flow_id=flow_id, started_at=_now())

        if not self.registry.try_start(flow_id):
            logger.info("flow %s is already running; ignoring start", flow_id)
            run_state.status = ExecutionStatus.SKIPPED
            run_state.logs.append("already running; start ignored")
            run_state.finished_at = _now()
            return run_state

        self.runs[run_state.run_id] = run_state
        try:
            await _FlowExecution(self, flow_id, run_state, callbacks).run()
        finally:
            self.registry.complete(flow_id)
            run_state.finished_at = _now()
        return run_state


class _FlowExecution:
    """One run of one flow: the private working copy, outputs and failure bookkeeping."""

    def __init__(self, engine: FlowEngine, flow_id: str, run_state: FlowRunState, callbacks: ExecutionCallbacks):
        self.engine = engine
        self.composer = engine.composer
        self.flow_id = flow_id
        self.run_state = run_state
        self.callbacks = callbacks
        self.working_nodes = ()
        self.edges: List[Edge] = []
        self.outputs: Dict[str, Any] = {}
        self.failed_nodes: Set[str] = set()
        self.had_error = False
        self.viewport = None
        self.meta = None

    def log(self, message: str) -> None:
        logger.info("[flow %s] %s", self.flow_id, message)
        self.run_state.logs.append(message)

    def is_active(self) -> bool:
        return self.composer.get_active_flow_id() == self.flow_id

    def write(self, updater: NodesUpdater) -> None:
        # the working copy always follows the run; the shared collection only while this flow is on screen
        self.working_nodes = updater(self.working_nodes)
        if self.is_active():
            self.composer.set_nodes(updater)

    def update_node(self, node_id: str, **fields: Any) -> None:
        self.write(lambda nodes: patch_node_data(nodes, node_id, **fields))

    def persist_progress(self) -> None:
        drafts = self.engine.drafts
        if drafts is None:
            return
        try:
            drafts.save_draft(self.flow_id, FlowDocument(
                nodes=list(self.working_nodes), edges=list(self.edges), viewport=self.viewport, meta=self.meta,
            ))
        except Exception:
            logger.warning("failed to persist running-flow snapshot for %s", self.flow_id, exc_info=True)

    async def run(self) -> None:
        try:
            await _notify(self.callbacks.on_started)
            if not self.is_active():
                raise FlowComposerError(f"flow {self.flow_id} is not open in the composer")
            self.working_nodes = tuple(self.composer.get_nodes())
            self.edges = list(self.composer.get_edges())
            self.viewport = self.composer.get_viewport()
            self.meta = self.composer.get_meta()

            ordered = levels(self.working_nodes, self.edges)
            self.log(f"{len(self.working_nodes)} node(s) in {len(ordered)} level(s)")
            for index, level in enumerate(ordered):
                results = await asyncio.gather(*(self.run_node(node) for node in level), return_exceptions=True)
                for result in results:
                    if isinstance(result, BaseException):
                        raise result
                self.engine.registry.update_progress(self.flow_id, level[-1].id, 100.0 * (index + 1) / len(ordered))

            self.run_state.outputs = dict(self.outputs)
            self.run_state.failed_nodes = sorted(self.failed_nodes)
            if self.had_error:
                self.run_state.status = ExecutionStatus.COMPLETED_WITH_ERRORS
                self.log("completed with errors")
                await _notify(self.callbacks.on_error)
            else:
                await self.publish_example_output(ordered)
                self.run_state.status = ExecutionStatus.SUCCESS
                self.log("completed")
                await _notify(self.callbacks.on_success)
        except Exception as exc:
            logger.exception("flow %s failed", self.flow_id)
            self.working_nodes = patch_all(self.working_nodes, running=False)
            if self.is_active():
                self.composer.set_nodes(lambda nodes: patch_all(nodes, running=False))
            self.run_state.outputs = dict(self.outputs)
            self.run_state.failed_nodes = sorted(self.failed_nodes)
            self.run_state.status = ExecutionStatus.FAILED
            self.run_state.error = str(exc)
            self.run_state.logs.append(f"failed: {exc}")
            await _notify(self.callbacks.on_failed, exc)

    async def run_node(self, node: Node) -> None:
        if any(e.target == node.id and e.source in self.failed_nodes for e in self.edges):
            self.update_node(node.id, error=True, running=False)
            self.failed_nodes.add(node.id)
            self.had_error = True
            self.log(f"skipping {node.id}: upstream failure")
            return

        handler = HANDLERS.get(node.type)
        if handler is None:
            self.log(f"no handler for {node.id} ({node.type})")
            return
        ctx = NodeContext(
            node=node,
            edges=self.edges,
            outputs=self.outputs,
            update=lambda **fields: self.update_node(node.id, **fields),
            dispatcher=self.engine.dispatcher,
        )
        outcome = await handler(ctx)
        if outcome.log:
            self.log(f"{node.id}: {outcome.log}")

        if outcome.failed:
            self.failed_nodes.add(node.id)
            self.had_error = True
            await _notify(self.callbacks.on_failed_with_error, outcome.error)
            return
        if outcome.has_output:
            self.outputs[node.id] = outcome.value
            self.persist_progress()

    async def publish_example_output(self, ordered) -> None:
        publisher = self.engine.publisher
        if publisher is None:
            return
        try:
            published = await publisher.publish(self.flow_id, ordered, self.edges, self.outputs)
        except Exception:
            logger.exception("failed to capture/upload example output for flow %s", self.flow_id)
            return
        if published is not None:
            self.run_state.example_output, self.run_state.example_output_type = published
