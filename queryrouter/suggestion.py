"""
AI query suggestions for failed queries.

Notes:
 - Uses the openai>=1.0.0 async client: from openai import AsyncOpenAI
 - The model is asked (through the caller's system instructions) to answer
   with a JSON object {"query": ..., "reason": ...}
"""
import json
import logging
import re
from typing import Any, Optional

from openai import AsyncOpenAI
from pydantic import ValidationError

from queryrouter.config import Settings
from queryrouter.errors import SuggestionError, SuggestionParseError
from queryrouter.models import AvailabilityStatus, Suggestion

LOG = logging.getLogger(__name__)

_JSON_FENCE_RE = re.compile(r"^```json\s*([\s\S]*)```$")


def is_ai_available(settings: Settings) -> AvailabilityStatus:
    if settings.OPENAI_API_KEY is not None:
        return AvailabilityStatus.AVAILABLE
    return AvailabilityStatus.UNAVAILABLE


def parse_suggestion(text: str) -> Optional[Suggestion]:
    """Parse model output into a Suggestion, tolerating a ```json fence.
       Returns None if the text is not a JSON suggestion."""
    cleaned = _JSON_FENCE_RE.sub(r"\1", text.strip())
    try:
        return Suggestion.model_validate(json.loads(cleaned))
    except (json.JSONDecodeError, ValidationError) as e:
        LOG.error("Failed to parse suggestion JSON: %s", e)
        return None


class SuggestionService:
    """Asks the chat completion API for a corrected query."""

    def __init__(self, settings: Settings, client: Optional[AsyncOpenAI] = None):
        self.settings = settings
        self._client = client

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(api_key=self.settings.OPENAI_API_KEY)
        return self._client

    async def suggest(self, system_instructions: Any, query: str, error: str) -> Suggestion:
        try:
            response = await self.client.chat.completions.create(
                model=self.settings.OPENAI_MODEL,
                messages=[
                    {"role": "system", "content": json.dumps(system_instructions)},
                    {"role": "user", "content": json.dumps({"query": query, "error": error})},
                ],
                temperature=self.settings.OPENAI_TEMPERATURE,
                max_tokens=self.settings.OPENAI_MAX_TOKENS,
                top_p=1,
                frequency_penalty=0,
                presence_penalty=0,
            )
        except Exception as e:
            LOG.error("AI suggestion request failed: %s", e)
            raise SuggestionError(str(e)) from e

        content = None
        if response.choices and response.choices[0].message:
            content = response.choices[0].message.content
        if not content:
            raise SuggestionParseError("No response from AI")

        LOG.info("AI response: %s", content)
        suggestion = parse_suggestion(content)
        if suggestion is None:
            raise SuggestionParseError("Failed to parse JSON")
        return suggestion
