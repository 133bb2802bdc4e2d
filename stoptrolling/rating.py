"""Rates hourly logs through the classification endpoint and stores the verdict."""

from __future__ import annotations

from typing import Optional

import httpx

from .day_service import DayService
from .errors import ClassificationTransportError


class RatingService:
    def __init__(
        self,
        day_service: DayService,
        classifier_url: str,
        timeout: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.day_service = day_service
        self.classifier_url = classifier_url
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def close(self) -> None:
        await self._client.aclose()

    async def rate_log(self, log: str, goal: str = "") -> bool:
        try:
            response = await self._client.post(
                self.classifier_url, json={"log": log, "goal": goal}
            )
        except httpx.HTTPError as exc:
            raise ClassificationTransportError(str(exc) or type(exc).__name__) from exc
        if not response.is_success:
            raise ClassificationTransportError(response.text, response.status_code)
        try:
            data = response.json()
        except ValueError as exc:
            raise ClassificationTransportError("response is not JSON", response.status_code) from exc
        if not isinstance(data, dict) or not isinstance(data.get("ok"), bool):
            raise ClassificationTransportError("malformed verdict", response.status_code)
        return data["ok"]

    async def rate_and_persist(
        self, day_id: str, start_hour: int, body: str, goal: str = ""
    ) -> bool:
        aligned = await self.rate_log(body, goal)
        await self.day_service.upsert_rating(day_id, start_hour, body, aligned)
        return aligned


__all__ = ["RatingService"]
