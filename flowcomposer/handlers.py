# flowcomposer/handlers.py
import json
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Sequence

from pydantic import ValidationError

from .dispatch import Dispatcher
from .graph import collect_inputs
from .models import Edge, Node, NodeOutcome, NodeType, WorkflowInfo


@dataclass
class NodeContext:
    node: Node
    edges: Sequence[Edge]
    outputs: Mapping[str, Any]
    update: Callable[..., None]  # update(**fields) patches this node's data
    dispatcher: Dispatcher


NodeHandler = Callable[[NodeContext], Awaitable[NodeOutcome]]

HANDLERS: Dict[NodeType, NodeHandler] = {}


def register_handler(node_type: NodeType):
    def decorator(fn):
        HANDLERS[node_type] = fn
        return fn
    return decorator


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"))
    return str(value)


@register_handler(NodeType.PRIMITIVE)
async def run_primitive(ctx: NodeContext) -> NodeOutcome:
    ctx.update(running=True)
    data = ctx.node.data
    if "value" in data:
        value = data["value"]
    else:
        value = (data.get("fieldType") or {}).get("defaultValue")
    ctx.update(running=False)
    return NodeOutcome(has_output=True, value=value, log=f"primitive value {value!r}")


@register_handler(NodeType.COMBINE_IMAGES)
async def run_combine_images(ctx: NodeContext) -> NodeOutcome:
    ctx.update(running=True)
    combined: List[Any] = []
    for value in collect_inputs(ctx.node, ctx.edges, ctx.outputs).values():
        if isinstance(value, list):
            combined.extend(value)
        elif value is not None:
            combined.append(value)
    ctx.update(running=False)
    return NodeOutcome(has_output=True, value=combined, log=f"combined {len(combined)} image(s)")


@register_handler(NodeType.COMBINE_TEXT)
async def run_combine_text(ctx: NodeContext) -> NodeOutcome:
    ctx.update(running=True)
    parts: List[str] = []
    for value in collect_inputs(ctx.node, ctx.edges, ctx.outputs).values():
        if isinstance(value, list):
            parts.extend(_stringify(v) for v in value)
        elif value is not None:
            parts.append(_stringify(value))
    ctx.update(running=False)
    return NodeOutcome(has_output=True, value="\n".join(parts), log=f"combined {len(parts)} text part(s)")


@register_handler(NodeType.WORKFLOW)
async def run_workflow(ctx: NodeContext) -> NodeOutcome:
    descriptor = ctx.node.data.get("workflow")
    if not descriptor:
        ctx.update(running=False, error=True)
        return NodeOutcome(failed=True, error="workflow node has no workflow selected")
    try:
        workflow = WorkflowInfo.model_validate(descriptor)
    except ValidationError as exc:
        ctx.update(running=False, error=True)
        return NodeOutcome(failed=True, error=f"invalid workflow descriptor: {exc.errors()[0]['msg']}")

    inputs = collect_inputs(ctx.node, ctx.edges, ctx.outputs)
    ctx.update(running=True, error=False)
    outcome = await ctx.dispatcher.dispatch(workflow, inputs)
    ctx.update(running=False, error=outcome.failed)
    return outcome


@register_handler(NodeType.RESULT)
async def run_result(ctx: NodeContext) -> NodeOutcome:
    ctx.update(running=True)
    inputs = collect_inputs(ctx.node, ctx.edges, ctx.outputs, include_manual=False)
    if not inputs:
        ctx.update(running=False)
        return NodeOutcome(log="no input")
    first = next(iter(inputs.values()))
    # lists stay lists: galleries display them and downstream nodes may consume them
    ctx.update(running=False, src=first)
    return NodeOutcome(has_output=True, value=first)


@register_handler(NodeType.COMMENT)
@register_handler(NodeType.REPLACE_AUDIO)
async def run_passive(ctx: NodeContext) -> NodeOutcome:
    return NodeOutcome(log=f"{ctx.node.type.value} node produces no output here")
