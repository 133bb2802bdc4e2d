"""LLM verdict on whether an hourly log fits the day's goal."""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

from openai import AsyncOpenAI

from .models import ClassificationResult

logger = logging.getLogger("stoptrolling.classifier")

INSTRUCTIONS = "\n".join(
    [
        "You rate a user's hourly log as PRODUCTIVE (ok=true) or NOT PRODUCTIVE (ok=false) "
        "based on their goal for the day if they have one.",
        "Rules:",
        "- ok=true if the activity is work, study, chores, exercise, rest/recovery, social time "
        "with productive intent, or neutral life admin.",
        "- ok=false if the activity is procrastination, clearly trolling, spam, abusive, social "
        "media (unless related to work), watching unproductive videos, playing video games, etc.",
        "- If ambiguous, do your best to rate it based on the context given.",
        "- If the daily goal is provided, weigh whether the activity advances that goal; however, "
        "truly necessary neutral tasks can still be ok=true.",
        "- If the user provides a goal, be very critical of whether the activity aligns with "
        "their goal for today aside from eating and exercise.",
        "Return ONLY the JSON specified by the provided schema.",
    ]
)

RESPONSE_FORMAT: dict[str, Any] = {
    "type": "json_schema",
    "json_schema": {
        "name": "log_rating",
        "strict": True,
        "schema": {
            "type": "object",
            "additionalProperties": False,
            "required": ["ok", "reason"],
            "properties": {
                "ok": {
                    "type": "boolean",
                    "description": "True if the log reflects productive / non-troll behavior.",
                },
                "reason": {"type": "string", "description": "Brief rationale for the verdict."},
            },
        },
    },
}


def build_user_content(log: str, goal: Optional[str]) -> str:
    if goal and goal.strip():
        return f"Log: {log}\nGoal: {goal}"
    return f"Log: {log}"


def parse_verdict(raw: Optional[str]) -> Optional[ClassificationResult]:
    """Validate model output; anything but ``{ok: bool, reason: str}`` is rejected."""
    if not raw:
        return None
    try:
        data = json.loads(raw)
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    ok, reason = data.get("ok"), data.get("reason")
    if not isinstance(ok, bool) or not isinstance(reason, str):
        return None
    return ClassificationResult(ok=ok, reason=reason)


class LogClassifier:
    """Never raises: every internal fault degrades to ``ok=True`` with a fallback reason."""

    def __init__(
        self,
        api_key: Optional[str],
        model: str = "gpt-4o-mini",
        timeout: float = 15.0,
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        self.model = model
        if client is not None:
            self._client: Optional[AsyncOpenAI] = client
        elif api_key:
            self._client = AsyncOpenAI(api_key=api_key, timeout=timeout)
        else:
            self._client = None

    async def classify(self, log: Any, goal: Any = None) -> ClassificationResult:
        if self._client is None:
            logger.warning("OPENAI_API_KEY is not set; defaulting verdict to ok")
            return ClassificationResult(ok=True, reason="Fallback (error: OPENAI_API_KEY is not set)")
        if not isinstance(log, str) or not log.strip():
            return ClassificationResult(ok=True, reason='Fallback (error: Missing "log" string)')
        goal_text = goal if isinstance(goal, str) else None

        try:
            response = await self._client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": INSTRUCTIONS},
                    {"role": "user", "content": build_user_content(log, goal_text)},
                ],
                response_format=RESPONSE_FORMAT,
            )
            content = response.choices[0].message.content if response.choices else None
        except Exception as exc:  # noqa: BLE001
            logger.warning("Classifier call failed: %s", exc)
            return ClassificationResult(ok=True, reason=f"Fallback (error: {exc})")

        verdict = parse_verdict(content)
        if verdict is None:
            logger.warning("Classifier returned an invalid verdict: %r", content)
            return ClassificationResult(
                ok=True, reason="Defaulted to ok=true because of invalid response."
            )
        return verdict


__all__ = ["LogClassifier", "ClassificationResult", "parse_verdict", "build_user_content"]
