import pytest

from flowcomposer.dispatch import Dispatcher, normalize_input_values, prepare_inputs
from flowcomposer.errors import AuthorizationDenied, UnknownProviderError
from flowcomposer.models import RunStatus, WorkflowInfo
from flowcomposer.runs import InMemoryRunStore

from tests.helpers import RecordingProvider


def workflow(**kwargs):
    kwargs.setdefault("title", "M")
    kwargs.setdefault("provider", "replicate")
    return WorkflowInfo.model_validate(kwargs)


SCHEMA = {
    "Input": {
        "properties": {
            "prompt": {"type": "string", "default": "a cat"},
            "style": {"type": "string", "default": "flat", "saved": "noir"},
            "images": {"type": "array", "items": {"type": "string"}},
            "seed": {"type": "integer"},
        }
    }
}


def test_prepare_inputs_fills_saved_then_default():
    prepared = prepare_inputs(workflow(schema=SCHEMA), {})
    assert prepared == {"prompt": "a cat", "style": "noir"}


def test_prepare_inputs_coerces_shapes():
    prepared = prepare_inputs(workflow(schema=SCHEMA), {"prompt": ["first", "second"], "images": "one.png", "seed": [5]})
    assert prepared["prompt"] == "first"
    assert prepared["images"] == ["one.png"]
    assert prepared["seed"] == 5


def test_prepare_inputs_keeps_unknown_keys():
    assert prepare_inputs(workflow(), {"anything": [1, 2]}) == {"anything": [1, 2]}


def test_prepare_inputs_tolerates_missing_schema():
    assert prepare_inputs(workflow(schema=None), {"prompt": "x"}) == {"prompt": "x"}
    assert prepare_inputs(workflow(schema={"Input": None}), {}) == {}


@pytest.mark.parametrize("raw_id, registered", [(7, 7), ("flux-dev", None), (None, None), (True, None)])
def test_only_integer_ids_are_registered(raw_id, registered):
    assert workflow(id=raw_id).registered_id == registered


@pytest.mark.asyncio
async def test_normalize_input_values_is_structural_copy():
    value = {"a": ["x", {"b": 1}], "c": None}
    assert await normalize_input_values(value) == value


@pytest.mark.asyncio
async def test_cache_hit_skips_second_dispatch():
    store = InMemoryRunStore()
    provider = RecordingProvider({"M": {"success": True, "outputPath": "https://cdn/x.png"}})
    dispatcher = Dispatcher({"replicate": provider}, run_store=store)
    wf = workflow(id=7, schema=SCHEMA)

    first = await dispatcher.dispatch(wf, {"prompt": "dog"})
    second = await dispatcher.dispatch(wf, {"prompt": "dog"})

    assert first.value == second.value == "https://cdn/x.png"
    assert provider.called("M") == 1
    assert second.log == "cache hit"
    [record] = store.list_runs()
    assert record.status == RunStatus.COMPLETED
    assert record.started_at is not None and record.completed_at is not None


@pytest.mark.asyncio
async def test_different_inputs_miss_the_cache():
    store = InMemoryRunStore()
    provider = RecordingProvider({"M": {"success": True, "output": "ok"}})
    dispatcher = Dispatcher({"replicate": provider}, run_store=store)
    await dispatcher.dispatch(workflow(id=7), {"prompt": "dog"})
    await dispatcher.dispatch(workflow(id=7), {"prompt": "cat"})
    assert provider.called("M") == 2
    assert len(store.list_runs()) == 2


@pytest.mark.asyncio
async def test_workflow_without_id_is_not_recorded():
    store = InMemoryRunStore()
    provider = RecordingProvider({"M": {"success": True, "output": "ok"}})
    dispatcher = Dispatcher({"fal": provider}, run_store=store)
    outcome = await dispatcher.dispatch(workflow(provider="fal"), {})
    assert outcome.value == "ok"
    assert store.list_runs() == []


@pytest.mark.asyncio
async def test_slug_id_dispatches_without_cache():
    store = InMemoryRunStore()
    provider = RecordingProvider({"M": {"success": True, "output": "ok"}})
    dispatcher = Dispatcher({"replicate": provider}, run_store=store)

    await dispatcher.dispatch(workflow(id="flux-dev"), {})
    outcome = await dispatcher.dispatch(workflow(id="flux-dev"), {})

    assert outcome.value == "ok"
    assert provider.called("M") == 2
    assert store.list_runs() == []


@pytest.mark.asyncio
async def test_dropped_output_is_not_replayed_from_cache():
    store = InMemoryRunStore()
    answers = [{"success": True, "output": []}, {"success": True, "output": "HI"}]

    async def next_answer(inputs):
        return answers.pop(0)

    provider = RecordingProvider({"M": next_answer})
    dispatcher = Dispatcher({"replicate": provider}, run_store=store)

    first = await dispatcher.dispatch(workflow(id=9), {"prompt": "x"})
    second = await dispatcher.dispatch(workflow(id=9), {"prompt": "x"})

    assert not first.has_output
    assert second.value == "HI" and second.log is None
    assert provider.called("M") == 2
    assert [r.status for r in store.list_runs()] == [RunStatus.FAILED, RunStatus.COMPLETED]


@pytest.mark.asyncio
async def test_failure_result_is_soft_and_recorded():
    store = InMemoryRunStore()
    provider = RecordingProvider({"M": {"success": False, "error": "boom"}})
    outcome = await Dispatcher({"replicate": provider}, run_store=store).dispatch(workflow(id=1), {})
    assert outcome.failed and outcome.error == "boom"
    [record] = store.list_runs()
    assert record.status == RunStatus.FAILED and record.error == "boom"


@pytest.mark.asyncio
async def test_failure_without_message_uses_default():
    provider = RecordingProvider({"M": {"success": False}})
    outcome = await Dispatcher({"replicate": provider}).dispatch(workflow(), {})
    assert outcome.error == "Runner returned error"


@pytest.mark.asyncio
async def test_provider_exception_fails_run_and_propagates():
    store = InMemoryRunStore()
    provider = RecordingProvider({"M": RuntimeError("network down")})
    with pytest.raises(RuntimeError):
        await Dispatcher({"replicate": provider}, run_store=store).dispatch(workflow(id=1), {})
    [record] = store.list_runs()
    assert record.status == RunStatus.FAILED and record.error == "network down"


@pytest.mark.asyncio
async def test_output_path_preferred_over_output():
    provider = RecordingProvider({"M": {"success": True, "outputPath": ["a.png"], "output": "ignored"}})
    outcome = await Dispatcher({"replicate": provider}).dispatch(workflow(), {})
    assert outcome.value == ["a.png"]


@pytest.mark.asyncio
@pytest.mark.parametrize("answer", [
    {"success": True, "output": []},
    {"success": True, "output": {"text": "not supported"}},
    {"success": True, "output": 12},
    {"success": True},
])
async def test_unsupported_outputs_are_dropped(answer):
    provider = RecordingProvider({"M": answer})
    outcome = await Dispatcher({"replicate": provider}).dispatch(workflow(), {})
    assert not outcome.has_output
    assert not outcome.failed


@pytest.mark.asyncio
async def test_missing_provider_goes_to_fal():
    replicate = RecordingProvider({"M": {"success": True, "output": "from replicate"}})
    fal = RecordingProvider({"M": {"success": True, "output": "from fal"}})
    wf = WorkflowInfo.model_validate({"title": "M", "imageName": "fal-ai/flux"})

    outcome = await Dispatcher({"replicate": replicate, "fal": fal}).dispatch(wf, {})

    assert outcome.value == "from fal"
    assert replicate.calls == []


@pytest.mark.asyncio
async def test_unknown_provider_raises():
    with pytest.raises(UnknownProviderError) as excinfo:
        await Dispatcher({"replicate": RecordingProvider({})}).dispatch(workflow(provider="midjourney"), {})
    assert excinfo.value.provider == "midjourney"


@pytest.mark.asyncio
async def test_cache_hit_does_not_need_the_provider():
    store = InMemoryRunStore()
    run_id = await store.create_run(4, "midjourney", {})
    await store.update_run(run_id, RunStatus.COMPLETED, output={"success": True, "output": "cached"})

    outcome = await Dispatcher({}, run_store=store).dispatch(workflow(id=4, provider="midjourney"), {})

    assert outcome.value == "cached" and outcome.log == "cache hit"


@pytest.mark.asyncio
async def test_authorization_hook_can_refuse():
    provider = RecordingProvider({"M": {"success": True, "output": "ok"}})

    async def authorize(wf, inputs):
        raise AuthorizationDenied("Insufficient credits")

    outcome = await Dispatcher({"replicate": provider}, authorize=authorize).dispatch(workflow(), {})
    assert outcome.failed and outcome.error == "Insufficient credits"
    assert provider.calls == []
