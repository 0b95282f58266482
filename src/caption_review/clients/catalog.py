"""Image catalog: source list for review sessions."""

import logging
from typing import Any, Dict, List

from ..models import SourceImage
from ..utils.auth import SessionProvider
from .rest import RestClient

logger = logging.getLogger(__name__)


class ImageCatalog:
    """Reads public images and their captions, newest first."""

    def __init__(self, config: Dict[str, Any], session_provider: SessionProvider, http=None):
        self.api_key = config.get("api_key")
        self.session_provider = session_provider
        headers = {"apikey": self.api_key} if self.api_key else {}
        self.http = http or RestClient(
            config["url"], timeout=config.get("timeout", 30.0), headers=headers
        )

    async def fetch_review_images(self, limit: int = 50) -> List[SourceImage]:
        session = self.session_provider.current_session()
        token = session.access_token if session and session.access_token else self.api_key
        rows = await self.http.request(
            "fetch_images",
            "GET",
            "images",
            token=token,
            params={
                "select": "id,url,captions!inner(id,content)",
                "is_public": "eq.true",
                "order": "created_datetime_utc.desc",
                "limit": str(limit),
            },
        )
        images = [SourceImage.from_dict(row) for row in rows or []]
        logger.info(f"Fetched {len(images)} images from catalog")
        return images

    async def close(self):
        await self.http.close()
