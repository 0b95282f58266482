"""Asset ingestion API client."""

import logging
from typing import Any, Dict, List, Optional

from ..exceptions import TransportError
from ..models import GeneratedCaption, UploadTarget
from .rest import RestClient

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.almostcrackd.ai/pipeline"


class AssetIngestionClient:
    """Typed calls to the upload, registration and caption-generation endpoints."""

    def __init__(self, config: Optional[Dict[str, Any]] = None, http: Optional[RestClient] = None):
        config = config or {}
        self.http = http or RestClient(
            config.get("base_url", DEFAULT_API_URL), timeout=config.get("timeout", 120.0)
        )

    async def generate_presigned_url(self, token: str, content_type: str) -> UploadTarget:
        body = await self.http.request(
            "generate_presigned_url",
            "POST",
            "generate-presigned-url",
            token=token,
            payload={"contentType": content_type},
        )
        try:
            upload_url, public_url = body["presignedUrl"], body["cdnUrl"]
        except (KeyError, TypeError) as e:
            raise TransportError("generate_presigned_url", f"Unexpected response: {body!r}") from e
        if not (isinstance(upload_url, str) and upload_url and isinstance(public_url, str) and public_url):
            raise TransportError("generate_presigned_url", f"Unexpected response: {body!r}")
        return UploadTarget(upload_url=upload_url, public_url=public_url)

    async def upload_bytes(self, upload_url: str, data: bytes, content_type: str) -> None:
        """PUT raw bytes to a presigned URL. The URL carries its own credential."""
        await self.http.request(
            "upload_bytes",
            "PUT",
            upload_url,
            data=data,
            headers={"Content-Type": content_type},
            expect_json=False,
        )

    async def register_image(self, token: str, image_url: str, is_common_use: bool = False) -> str:
        body = await self.http.request(
            "register_image",
            "POST",
            "upload-image-from-url",
            token=token,
            payload={"imageUrl": image_url, "isCommonUse": is_common_use},
        )
        try:
            return str(body["imageId"])
        except (KeyError, TypeError) as e:
            raise TransportError("register_image", f"Unexpected response: {body!r}") from e

    async def generate_captions(self, token: str, image_id: str) -> List[GeneratedCaption]:
        body = await self.http.request(
            "generate_captions",
            "POST",
            "generate-captions",
            token=token,
            payload={"imageId": image_id},
        )
        if isinstance(body, dict):
            body = body.get("captions")
        if not isinstance(body, list):
            raise TransportError("generate_captions", f"Unexpected response: {body!r}")
        return [GeneratedCaption.from_dict(item) for item in body if isinstance(item, dict)]

    async def close(self):
        await self.http.close()
