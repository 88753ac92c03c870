# flowcomposer/providers.py
import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

import httpx

from .config import Settings
from .models import WorkflowInfo

logger = logging.getLogger(__name__)


def prettify_error(exc: Exception) -> str:
    """Turn an HTTP failure into the short message shown on the node."""
    if isinstance(exc, httpx.HTTPStatusError):
        text = exc.response.text
        try:
            body = json.loads(text)
        except ValueError:
            body = None
        if isinstance(body, dict):
            invalid = body.get("invalid_fields")
            if isinstance(invalid, list) and invalid:
                return "; ".join(f"{f.get('field')}: {f.get('description')}" for f in invalid if isinstance(f, dict))
            if body.get("detail"):
                return str(body["detail"]).strip()
            if body.get("title"):
                return str(body["title"]).strip()
        return f"API error ({exc.response.status_code}): {text.strip()}" if text.strip() else f"API error ({exc.response.status_code})"
    return str(exc) or exc.__class__.__name__


class _HttpProvider:
    def __init__(self, client: Optional[httpx.AsyncClient] = None, poll_interval: float = 2.0, max_polls: int = 300, timeout: float = 60.0):
        self.client = client
        self.poll_interval = poll_interval
        self.max_polls = max_polls
        self.timeout = timeout

    @asynccontextmanager
    async def session(self) -> AsyncIterator[httpx.AsyncClient]:
        if self.client is not None:
            yield self.client
            return
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            yield client

    async def sleep_between_polls(self, poll: int) -> None:
        if poll > 0:
            await asyncio.sleep(self.poll_interval)


class ReplicateProvider(_HttpProvider):
    """Runs a model through Replicate predictions and polls until it settles."""

    name = "replicate"
    TERMINAL = ("succeeded", "failed", "canceled")

    def __init__(self, api_token: Optional[str], base_url: str = "https://api.replicate.com/v1", **kwargs):
        super().__init__(**kwargs)
        self.api_token = api_token
        self.base_url = base_url.rstrip("/")

    def headers(self) -> Dict[str, str]:
        return {"Authorization": f"Token {self.api_token}", "Content-Type": "application/json"}

    async def __call__(self, workflow: WorkflowInfo, inputs: Dict[str, Any]) -> Dict[str, Any]:
        prediction_id = None
        try:
            async with self.session() as client:
                prediction = await self.start(client, workflow, inputs)
                prediction_id = prediction.get("id") if isinstance(prediction, dict) else None
                if not prediction_id:
                    return {"success": False, "error": "No prediction id found in response"}
                final = await self.poll(client, prediction_id)
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("replicate call for %r failed: %s", workflow.title, exc)
            return {"success": False, "error": prettify_error(exc), "predictionId": prediction_id}

        if final is None:
            return {"success": False, "error": "Prediction timed out", "predictionId": prediction_id}
        status = final.get("status")
        if status == "canceled":
            return {"success": False, "error": "canceled", "predictionId": prediction_id}
        if status != "succeeded":
            return {"success": False, "error": final.get("error") or "Prediction failed", "predictionId": prediction_id}
        output = final.get("output")
        if output is None:
            return {"success": False, "error": "No output returned from prediction", "predictionId": prediction_id}
        return {
            "success": True,
            "outputPath": output,
            "type": workflow.outputType,
            "predictionId": prediction_id,
            "processingTime": (final.get("metrics") or {}).get("predict_time", 0),
        }

    async def start(self, client: httpx.AsyncClient, workflow: WorkflowInfo, inputs: Dict[str, Any]) -> Dict[str, Any]:
        model = workflow.imageName or ""
        version = workflow.version
        if ":" in model:
            model, version = model.split(":", 1)
        if version and version != "1":
            url = f"{self.base_url}/predictions"
            body = {"version": version, "input": inputs}
        else:
            url = f"{self.base_url}/models/{model}/predictions"
            body = {"input": inputs}
        resp = await client.post(url, json=body, headers=self.headers())
        resp.raise_for_status()
        return resp.json()

    async def poll(self, client: httpx.AsyncClient, prediction_id: str) -> Optional[Dict[str, Any]]:
        for poll in range(self.max_polls):
            await self.sleep_between_polls(poll)
            try:
                resp = await client.get(f"{self.base_url}/predictions/{prediction_id}", headers=self.headers())
                resp.raise_for_status()
                status = resp.json()
            except (httpx.HTTPError, ValueError) as exc:
                # transient status errors: keep polling
                logger.warning("status check for %s failed: %s", prediction_id, exc)
                continue
            if isinstance(status, dict) and status.get("status") in self.TERMINAL:
                return status
        return None

    async def cancel(self, prediction_id: str) -> bool:
        try:
            async with self.session() as client:
                resp = await client.post(f"{self.base_url}/predictions/{prediction_id}/cancel", headers=self.headers())
                resp.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("cancelling prediction %s failed: %s", prediction_id, exc)
            return False
        return True


def _media_url(value: Any) -> Optional[str]:
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        url = value.get("url")
        return url if isinstance(url, str) else None
    if isinstance(value, list) and value:
        return _media_url(value[0])
    return None


def extract_fal_output(data: Dict[str, Any]) -> Optional[str]:
    for key in ("audio", "video", "image", "model_mesh", "audio_file"):
        url = _media_url(data.get(key))
        if url:
            return url
    if isinstance(data.get("url"), str):
        return data["url"]
    return _media_url(data.get("images"))


def detect_output_type(url: str, data: Dict[str, Any]) -> str:
    lowered = url.lower()
    if lowered.endswith((".mp3", ".wav", ".ogg")):
        return "audio"
    if lowered.endswith((".mp4", ".webm", ".mov")):
        return "video"
    if data.get("video"):
        return "video"
    if data.get("audio") or data.get("audio_file"):
        return "audio"
    if lowered.endswith(".glb") or data.get("model_mesh"):
        return "3d"
    return "image"


class FalProvider(_HttpProvider):
    """Runs a model through the fal.ai queue API."""

    name = "fal"

    def __init__(self, api_key: Optional[str], queue_url: str = "https://queue.fal.run", **kwargs):
        super().__init__(**kwargs)
        self.api_key = api_key
        self.queue_url = queue_url.rstrip("/")

    def headers(self) -> Dict[str, str]:
        return {"Authorization": f"Key {self.api_key}", "Content-Type": "application/json"}

    @staticmethod
    def base_model_path(model: str) -> str:
        # status and result endpoints only take owner/model
        parts = model.split("/")
        return "/".join(parts[:2]) if len(parts) >= 2 else model

    async def __call__(self, workflow: WorkflowInfo, inputs: Dict[str, Any]) -> Dict[str, Any]:
        model = workflow.imageName or ""
        request_id = None
        try:
            async with self.session() as client:
                resp = await client.post(f"{self.queue_url}/{model}", json=inputs, headers=self.headers())
                resp.raise_for_status()
                request_id = resp.json().get("request_id")
                if not request_id:
                    return {"success": False, "error": "No request_id found in response"}
                base = f"{self.queue_url}/{self.base_model_path(model)}/requests/{request_id}"
                status = await self.poll(client, base)
                if status is None:
                    return {"success": False, "error": "Request timed out", "requestId": request_id}
                if status in ("CANCELLED", "CANCELED"):
                    return {"success": False, "error": "canceled", "requestId": request_id}
                if status != "COMPLETED":
                    return {"success": False, "error": f"Request ended with status {status}", "requestId": request_id}
                resp = await client.get(base, headers=self.headers())
                resp.raise_for_status()
                data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("fal call for %r failed: %s", workflow.title, exc)
            return {"success": False, "error": prettify_error(exc), "requestId": request_id}

        url = extract_fal_output(data) if isinstance(data, dict) else None
        if not url:
            return {"success": False, "error": "No output URL found in the response", "requestId": request_id}
        return {
            "success": True,
            "outputPath": url,
            "output": url,
            "type": detect_output_type(url, data) or workflow.outputType,
            "requestId": request_id,
        }

    async def poll(self, client: httpx.AsyncClient, base: str) -> Optional[str]:
        for poll in range(self.max_polls):
            await self.sleep_between_polls(poll)
            resp = await client.get(f"{base}/status", headers=self.headers())
            resp.raise_for_status()
            status = resp.json().get("status") or "UNKNOWN"
            if status in ("COMPLETED", "CANCELLED", "CANCELED", "ERROR"):
                return status
        return None


def default_providers(settings: Settings, client: Optional[httpx.AsyncClient] = None) -> Dict[str, Any]:
    common = dict(client=client, poll_interval=settings.poll_interval, max_polls=settings.max_polls, timeout=settings.http_timeout)
    return {
        ReplicateProvider.name: ReplicateProvider(settings.replicate_api_token, settings.replicate_base_url, **common),
        FalProvider.name: FalProvider(settings.fal_key, settings.fal_queue_url, **common),
    }
