# flowcomposer/uploads.py
import base64 as b64
import mimetypes
import uuid
from pathlib import Path
from typing import Dict, Tuple

DEFAULT_MIME = "application/octet-stream"


def parse_data_uri(value: str) -> Tuple[str, str]:
    """Split ``data:<mime>;base64,<payload>`` into (mime, payload). Bare base64 is accepted too."""
    if not value.startswith("data:"):
        return DEFAULT_MIME, value
    header, _, payload = value.partition(",")
    mime = header[len("data:"):].split(";")[0] or DEFAULT_MIME
    return mime, payload


def to_data_uri(content: bytes, content_type: str) -> str:
    mime = (content_type or DEFAULT_MIME).split(";")[0].strip() or DEFAULT_MIME
    return f"data:{mime};base64,{b64.b64encode(content).decode('ascii')}"


class LocalUploader:
    """Stores uploaded blobs on disk and serves them under ``/uploads``."""

    def __init__(self, root: str, public_base_url: str):
        self.root = Path(root)
        self.public_base_url = public_base_url.rstrip("/")

    async def upload(self, base64: str, flow_id: str, folder: str) -> Dict[str, str]:
        mime, payload = parse_data_uri(base64)
        content = b64.b64decode(payload)
        ext = mimetypes.guess_extension(mime) or ".bin"
        name = f"{uuid.uuid4().hex}{ext}"
        target = self.root / folder / flow_id
        target.mkdir(parents=True, exist_ok=True)
        (target / name).write_bytes(content)
        return {"url": f"{self.public_base_url}/uploads/{folder}/{flow_id}/{name}"}
