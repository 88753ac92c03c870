# flowcomposer/main.py
import asyncio
import uuid
from typing import Optional

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel

from .config import configure_logging, get_settings
from .engine import ExecutionCallbacks, FlowEngine
from .errors import FlowNotFound
from .models import FlowDocument
from .providers import default_providers
from .runs import InMemoryRunStore
from .state import ComposerState, DraftStore, FlowLibrary
from .uploads import LocalUploader

settings = get_settings()
configure_logging(settings.log_level)

app = FastAPI(title="Flow Composer")
app.mount("/uploads", StaticFiles(directory=settings.upload_dir, check_dir=False), name="uploads")

composer = ComposerState()
drafts = DraftStore()
library = FlowLibrary(drafts)
run_store = InMemoryRunStore()
uploader = LocalUploader(settings.upload_dir, settings.public_base_url)
engine = FlowEngine(
    composer=composer,
    providers=default_providers(settings),
    run_store=run_store,
    drafts=drafts,
    upload=uploader.upload,
    update_example_output=library.update_example_output,
)

# keep references so background runs are not garbage collected
_background: set = set()


@app.post("/flows/{flow_id}")
async def save_flow(flow_id: str, document: FlowDocument):
    library.save(flow_id, document)
    if composer.get_active_flow_id() == flow_id and not engine.registry.is_running(flow_id):
        composer.open_flow(flow_id, document)
    return {"flow_id": flow_id, "nodes": len(document.nodes), "edges": len(document.edges)}


@app.get("/flows/{flow_id}")
async def get_flow(flow_id: str):
    try:
        document = library.get(flow_id)
    except FlowNotFound:
        raise HTTPException(status_code=404, detail="flow not found")
    draft = drafts.get_draft(flow_id)
    return {
        "flow_id": flow_id,
        "flow": document,
        "draft": draft,
        "example_output": library.example_outputs.get(flow_id),
        "running": engine.registry.is_running(flow_id),
    }


@app.post("/composer/open/{flow_id}")
async def open_flow(flow_id: str):
    try:
        document = library.load_for_editing(flow_id)
    except FlowNotFound:
        raise HTTPException(status_code=404, detail="flow not found")
    composer.open_flow(flow_id, document)
    return {"flow_id": flow_id}


@app.get("/composer")
async def get_composer():
    return {"flow_id": composer.get_active_flow_id(), "nodes": composer.get_nodes(), "edges": composer.get_edges()}


class ExecutePayload(BaseModel):
    run_in_background: Optional[bool] = False


@app.post("/flows/{flow_id}/execute")
async def execute_flow(flow_id: str, payload: Optional[ExecutePayload] = None):
    payload = payload or ExecutePayload()
    if engine.registry.is_running(flow_id):
        raise HTTPException(status_code=409, detail="flow is already running")
    if composer.get_active_flow_id() != flow_id:
        await open_flow(flow_id)

    errors = []
    callbacks = ExecutionCallbacks(on_failed_with_error=errors.append)
    if payload.run_in_background:
        run_id = str(uuid.uuid4())
        task = asyncio.create_task(engine.execute_flow(flow_id, callbacks, run_id=run_id))
        _background.add(task)
        task.add_done_callback(_background.discard)
        return {"run_id": run_id, "status": "running"}

    run = await engine.execute_flow(flow_id, callbacks)
    return {"run_id": run.run_id, "status": run.status, "outputs": run.outputs, "errors": errors, "logs": run.logs}


@app.get("/executions")
async def list_executions():
    return {"running": engine.registry.snapshot()}


@app.get("/executions/{run_id}")
async def get_execution(run_id: str):
    run = engine.runs.get(run_id)
    if not run:
        raise HTTPException(status_code=404, detail="run not found")
    return run


@app.get("/runs")
async def list_runs():
    return {"runs": run_store.list_runs()}


@app.get("/providers")
async def list_providers():
    return {"providers": sorted(engine.providers)}


if __name__ == "__main__":
    uvicorn.run("flowcomposer.main:app", host="0.0.0.0", port=8000, reload=True)
