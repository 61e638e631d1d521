# recommend/text_client.py
import logging
import os
from typing import Optional

import requests

from config import TextGenerationConfig
from errors import TextGenerationError

logger = logging.getLogger(__name__)


class TextGenerationClient:
    """Calls the Gemini generateContent REST endpoint."""

    def __init__(self, config: Optional[TextGenerationConfig] = None, api_key: Optional[str] = None):
        self.config = config or TextGenerationConfig()
        self.api_key = api_key or os.environ.get(self.config.api_key_env)
        self.base_url = self.config.base_url.rstrip("/")

    @property
    def url(self) -> str:
        return f"{self.base_url}/models/{self.config.model}:generateContent"

    def generate(self, prompt: str) -> str:
        if not self.api_key:
            raise TextGenerationError(f"No API key in {self.config.api_key_env}")

        body = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": self.config.temperature,
                "maxOutputTokens": self.config.max_output_tokens,
            },
        }
        try:
            resp = requests.post(
                self.url,
                json=body,
                headers={"x-goog-api-key": self.api_key},
                timeout=self.config.timeout_seconds,
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"Network error calling text generation: {e}")
            raise TextGenerationError(f"Network error: {e}")

        if resp.status_code != 200:
            logger.error(f"Text generation failed: {resp.status_code} {resp.text[:200]}")
            raise TextGenerationError(
                f"Text generation returned {resp.status_code}",
                {"status_code": resp.status_code},
            )

        try:
            data = resp.json()
            parts = data["candidates"][0]["content"]["parts"]
        except (ValueError, KeyError, IndexError, TypeError):
            raise TextGenerationError("Malformed text generation response")

        text = "".join(part.get("text", "") for part in parts).strip()
        if not text:
            raise TextGenerationError("Text generation returned an empty response")
        return text
