# flowcomposer/dispatch.py
import logging
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from .errors import AuthorizationDenied, UnknownProviderError
from .models import NodeOutcome, ProviderResult, RunStatus, WorkflowInfo
from .runs import RunStore

logger = logging.getLogger(__name__)

ProviderFn = Callable[[WorkflowInfo, Dict[str, Any]], Awaitable[Any]]
AuthorizeHook = Callable[[WorkflowInfo, Dict[str, Any]], Awaitable[None]]

SCALAR_TYPES = ("string", "integer", "number", "boolean")
RUNNER_ERROR = "Runner returned error"
DEFAULT_PROVIDER = "fal"


def prepare_inputs(workflow: WorkflowInfo, inputs: Mapping[str, Any]) -> Dict[str, Any]:
    """Fill missing inputs from the schema (saved value, then default) and fix list/scalar mismatches."""
    filled = dict(inputs)
    for key, prop in workflow.input_properties().items():
        if not isinstance(prop, dict):
            continue
        if key not in filled:
            if "saved" in prop:
                filled[key] = prop["saved"]
            elif "default" in prop:
                filled[key] = prop["default"]
        if key not in filled:
            continue
        value = filled[key]
        if prop.get("type") in SCALAR_TYPES and isinstance(value, list) and value:
            logger.debug("taking first element of %s for scalar input", key)
            filled[key] = value[0]
        elif prop.get("type") == "array" and not isinstance(prop.get("items"), list) and not isinstance(value, list):
            logger.debug("wrapping %s into a single-element list", key)
            filled[key] = [value]
    return filled


async def normalize_input_values(value: Any) -> Any:
    # hook point for turning local file references into hosted URIs
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        return [await normalize_input_values(v) for v in value]
    if isinstance(value, dict):
        return {k: await normalize_input_values(v) for k, v in value.items()}
    return value


def as_provider_result(result: Any) -> ProviderResult:
    if isinstance(result, ProviderResult):
        return result
    if isinstance(result, Mapping):
        return ProviderResult.model_validate(dict(result))
    # bare values from older cached runs
    return ProviderResult(success=True, output=result)


def extract_output(result: ProviderResult) -> Any:
    return result.outputPath if result.outputPath is not None else result.output


class Dispatcher:
    """Calls the provider behind a workflow node, with run bookkeeping and cache lookup."""

    def __init__(self, providers: Dict[str, ProviderFn], run_store: Optional[RunStore] = None, authorize: Optional[AuthorizeHook] = None):
        self.providers = providers
        self.run_store = run_store
        self.authorize = authorize

    @staticmethod
    def provider_name(workflow: WorkflowInfo) -> str:
        # anything not explicitly named goes through the fal queue
        return workflow.provider or DEFAULT_PROVIDER

    def runner_for(self, workflow: WorkflowInfo) -> ProviderFn:
        name = self.provider_name(workflow)
        runner = self.providers.get(name)
        if runner is None:
            raise UnknownProviderError(name)
        return runner

    async def dispatch(self, workflow: WorkflowInfo, inputs: Mapping[str, Any]) -> NodeOutcome:
        prepared = await normalize_input_values(prepare_inputs(workflow, inputs))
        workflow_id = workflow.registered_id if self.run_store is not None else None
        provider = self.provider_name(workflow)

        run_id = None
        cache_hit = False
        if workflow_id is not None:
            cached = await self.run_store.find_cached_run(workflow_id, prepared)
            cache_hit = cached.found and cached.output is not None

        if cache_hit:
            logger.info("workflow %s: cached result from %s", workflow_id, cached.completed_at)
            result = as_provider_result(cached.output)
        else:
            runner = self.runner_for(workflow)
            try:
                await self._authorize(workflow, prepared)
            except AuthorizationDenied as exc:
                return NodeOutcome(failed=True, error=str(exc) or "Not authorized")
            if workflow_id is not None:
                run_id = await self.run_store.create_run(workflow_id, provider, prepared)
                await self.run_store.update_run(run_id, RunStatus.RUNNING)
            logger.info("calling %s runner for %r", provider, workflow.title or workflow.imageName)
            try:
                result = as_provider_result(await runner(workflow, prepared))
            except Exception as exc:
                if run_id is not None:
                    await self.run_store.update_run(run_id, RunStatus.FAILED, error=str(exc))
                raise

        if not result.success:
            error = result.error or RUNNER_ERROR
            if run_id is not None:
                await self.run_store.update_run(run_id, RunStatus.FAILED, error=error)
            return NodeOutcome(failed=True, error=error, log=f"runner failed: {error}")

        value = extract_output(result)
        dropped = None
        if isinstance(value, list) and not value:
            logger.warning("empty array output from %s runner", provider)
            dropped = "empty output dropped"
        elif not value or not isinstance(value, (str, list)):
            logger.warning("unsupported runner result format: %r", result)
            dropped = "unsupported output dropped"
        if dropped:
            # a dropped result is never cached
            if run_id is not None:
                await self.run_store.update_run(run_id, RunStatus.FAILED, error=dropped)
            return NodeOutcome(log=dropped)

        if run_id is not None:
            await self.run_store.update_run(run_id, RunStatus.COMPLETED, output=result.model_dump(exclude_none=True))
        return NodeOutcome(has_output=True, value=value, log="cache hit" if cache_hit else None)

    async def _authorize(self, workflow: WorkflowInfo, inputs: Dict[str, Any]) -> None:
        if self.authorize is not None:
            await self.authorize(workflow, inputs)
