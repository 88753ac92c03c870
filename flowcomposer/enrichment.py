# flowcomposer/enrichment.py
import logging
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import httpx

from .models import Edge, Node, NodeType
from .uploads import to_data_uri

logger = logging.getLogger(__name__)

MEDIA_TYPES = ("image", "video", "audio")
EXAMPLES_FOLDER = "examples"

UploadFn = Callable[..., Awaitable[Dict[str, str]]]
ExampleOutputFn = Callable[[str, str, str], Awaitable[None]]


def infer_output_type(source: Node) -> Optional[str]:
    if source.type == NodeType.WORKFLOW:
        return (source.data.get("workflow") or {}).get("outputType")
    if source.type == NodeType.PRIMITIVE:
        return source.data.get("outputType")
    if source.type == NodeType.COMBINE_IMAGES:
        return "image"
    if source.type == NodeType.REPLACE_AUDIO:
        return "video"
    return None


def pick_example_output(ordered: Sequence[Sequence[Node]], edges: Sequence[Edge], outputs: Mapping[str, Any]) -> Optional[Tuple[Any, str]]:
    """The last result node's output and the media type of whatever feeds it."""
    flat: List[Node] = [n for level in ordered for n in level]
    results = [n for n in flat if n.type == NodeType.RESULT and n.id in outputs]
    if not results:
        logger.info("no result node produced output; skipping example output")
        return None
    last = results[-1]
    value = outputs[last.id]
    source_edge = next((e for e in edges if e.target == last.id), None)
    if source_edge is None:
        logger.warning("result node %s has no incoming edge", last.id)
        return None
    source = next((n for n in flat if n.id == source_edge.source), None)
    if source is None:
        logger.warning("no source node found for edge %s", source_edge.id)
        return None
    output_type = infer_output_type(source)
    if output_type not in MEDIA_TYPES or not value:
        logger.info("output type %r is not media; skipping example output", output_type)
        return None
    return value, output_type


class ExampleOutputPublisher:
    """Hosts a finished flow's output on our storage and records it as the flow's preview."""

    def __init__(self, upload: UploadFn, update_example_output: ExampleOutputFn, http_client: Optional[httpx.AsyncClient] = None, timeout: float = 60.0):
        self.upload = upload
        self.update_example_output = update_example_output
        self.http_client = http_client
        self.timeout = timeout

    async def publish(self, flow_id: str, ordered, edges, outputs) -> Optional[Tuple[str, str]]:
        picked = pick_example_output(ordered, edges, outputs)
        if picked is None:
            return None
        value, output_type = picked
        if isinstance(value, list):
            value = value[0]
        if not isinstance(value, str):
            logger.info("example output is not a string; skipping upload")
            return None

        if value.startswith("data:"):
            uploaded = await self.upload(base64=value, flow_id=flow_id, folder=EXAMPLES_FOLDER)
            url = uploaded["url"]
        elif value.startswith(("http://", "https://")):
            url = await self._rehost(flow_id, value)
        else:
            logger.info("example output is neither a data URI nor a URL; skipping upload")
            return None

        await self.update_example_output(flow_id, output_type, url)
        logger.info("flow %s example output recorded (%s)", flow_id, output_type)
        return url, output_type

    async def _rehost(self, flow_id: str, url: str) -> str:
        try:
            data_uri = await self._download(url)
            uploaded = await self.upload(base64=data_uri, flow_id=flow_id, folder=EXAMPLES_FOLDER)
            return uploaded["url"]
        except Exception as exc:
            logger.error("failed to re-host %s: %s; keeping original URL", url, exc)
            return url

    async def _download(self, url: str) -> str:
        if self.http_client is not None:
            response = await self.http_client.get(url)
        else:
            async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
                response = await client.get(url)
        response.raise_for_status()
        return to_data_uri(response.content, response.headers.get("content-type", ""))
