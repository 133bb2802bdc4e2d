"""Authenticated media post on behalf of a signed-in user."""

from __future__ import annotations

from typing import Any, Dict, Optional

from .errors import PostingError
from .tokens import TokenManager
from .x_client import XClient


class ImageRequired(PostingError):
    status_code = 400
    error = "image_required"


class InvalidImage(PostingError):
    status_code = 400
    error = "invalid_image"


def extract_base64(image: Any) -> str:
    """Accept raw base64 or a ``data:`` URL; raise when nothing usable is left."""
    if not isinstance(image, str) or not image:
        raise ImageRequired()
    data = image.split(",", 1)[1] if "," in image else image
    if not data:
        raise InvalidImage()
    return data


class PostingService:
    def __init__(self, token_manager: TokenManager, x_client: XClient) -> None:
        self.token_manager = token_manager
        self.x_client = x_client

    async def post_image(self, user_id: str, image: Any, text: Optional[str] = None) -> Dict[str, Any]:
        media_data = extract_base64(image)
        tokens = await self.token_manager.get_valid(user_id)
        media_id = await self.x_client.upload_media(tokens.access_token, media_data)
        caption = text.strip() if isinstance(text, str) and text.strip() else None
        return await self.x_client.create_tweet(tokens.access_token, caption, [media_id])


__all__ = ["PostingService", "ImageRequired", "InvalidImage", "extract_base64"]
