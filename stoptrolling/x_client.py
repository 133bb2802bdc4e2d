"""HTTP client for the X posting endpoints."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import httpx

from .errors import XApiError

X_API_BASE = "https://api.x.com/2"
MEDIA_UPLOAD_URL = "https://upload.twitter.com/1.1/media/upload.json"


def _json_or_empty(response: httpx.Response) -> Dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {"data": data}


class XClient:
    """Simple async wrapper around the bearer-token media upload and post endpoints."""

    def __init__(self, timeout: float = 20.0, client: Optional[httpx.AsyncClient] = None) -> None:
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def close(self) -> None:
        await self._client.aclose()

    async def upload_media(self, access_token: str, media_data: str) -> str:
        """Upload base64 image data and return the media id."""
        try:
            response = await self._client.post(
                MEDIA_UPLOAD_URL,
                headers={"Authorization": f"Bearer {access_token}"},
                data={"media_data": media_data},
            )
        except httpx.HTTPError as exc:
            raise XApiError("media_upload_failed", 502, {"message": str(exc)}) from exc
        data = _json_or_empty(response)
        if not response.is_success:
            raise XApiError("media_upload_failed", response.status_code, data)
        media_id = data.get("media_id_string") or data.get("media_id")
        if not media_id:
            raise XApiError("media_missing", 502, data)
        return str(media_id)

    async def create_tweet(
        self,
        access_token: str,
        text: Optional[str] = None,
        media_ids: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {}
        if text:
            payload["text"] = text
        if media_ids:
            payload["media"] = {"media_ids": media_ids}
        try:
            response = await self._client.post(
                f"{X_API_BASE}/tweets",
                headers={"Authorization": f"Bearer {access_token}"},
                json=payload,
            )
        except httpx.HTTPError as exc:
            raise XApiError("tweet_failed", 502, {"message": str(exc)}) from exc
        data = _json_or_empty(response)
        if not response.is_success:
            raise XApiError("tweet_failed", response.status_code, data)
        return data.get("data", data)


__all__ = ["XClient", "XApiError", "MEDIA_UPLOAD_URL", "X_API_BASE"]
