from __future__ import annotations

import os
from typing import Optional

import structlog
from openai import AsyncOpenAI, OpenAIError

from skema_daemon.prompts import IMAGE_ANALYSIS_PROMPT

log = structlog.get_logger(__name__)

DEFAULT_VISION_MODEL = "gpt-4o-mini"


class VisionAnalyzer:
    """Describes drawing images so the agent gets a text rendition of the sketch.

    Optional: without a client (no ``OPENAI_API_KEY``) every call returns ``None``
    and drawings are prompted from their SVG and nearby elements only.
    """

    def __init__(self, client: Optional[AsyncOpenAI], model: Optional[str] = None):
        self.client = client
        self.model = model or DEFAULT_VISION_MODEL

    @classmethod
    def from_env(cls, model: Optional[str] = None) -> "VisionAnalyzer":
        if not os.getenv("OPENAI_API_KEY"):
            log.info("vision_disabled", reason="OPENAI_API_KEY not set")
            return cls(None, model)
        return cls(AsyncOpenAI(), model)

    @property
    def available(self) -> bool:
        return self.client is not None

    async def describe(self, image: str) -> Optional[str]:
        """Return a textual description of a base64 PNG (or data URL), or ``None`` on any API failure."""
        if self.client is None or not image:
            return None
        url = image if image.startswith("data:") else f"data:image/png;base64,{image}"
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": IMAGE_ANALYSIS_PROMPT},
                            {"type": "image_url", "image_url": {"url": url}},
                        ],
                    }
                ],
                max_tokens=800,
            )
        except OpenAIError as exc:
            log.warning("vision_failed", error=str(exc), model=self.model)
            return None
        text = (response.choices[0].message.content or "").strip()
        log.info("vision_described", model=self.model, chars=len(text))
        return text or None

    async def close(self) -> None:
        if self.client is not None:
            await self.client.close()
