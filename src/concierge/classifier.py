"""Structured classification through a hosted generative model.

Architecture:
    caller -> classify_structured(schema, prompt) -> Classifier.classify()
           -> HTTP POST {base_url}/chat/completions -> JSON object
           -> schema.model_validate() -> typed result | InvalidSchema

The classifier is an injected capability: anything with an async
``classify(schema, prompt)`` method returning the raw JSON object works,
which is how tests substitute canned answers.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Literal, Protocol, TypeVar

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from concierge.config import ClassifierConfig
from concierge.errors import ClassifierUnavailable, InvalidSchema

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


# --- Output schemas ---


class _Schema(BaseModel):
    model_config = ConfigDict(strict=True, frozen=True, populate_by_name=True)


class ElementChoice(_Schema):
    """One element picked from a candidate list."""

    element_id: str = Field(alias="elementId", description="The identifier of the chosen element")


class ButtonChoice(_Schema):
    """A control picked by its visible text."""

    button_text: str = Field(
        alias="buttonText",
        description="The visible text of the chosen control (e.g. 'Ingresar', 'Acceder', 'Login')",
    )


class InvoiceRecord(_Schema):
    """Latest invoice extracted from the portal's invoice table."""

    expiration_date: str = Field(alias="expirationDate", description="The expiration date")
    amount: str = Field(description="The amount of the invoice")
    factura_id: str = Field(alias="facturaId", description="The id from the 'Factura' column")


class CleaningResult(_Schema):
    """Output of the transcript cleaning pass."""

    cleaned_text: str = Field(
        alias="cleanedText",
        description="Cleaned and properly formatted transcription in the same language as the original",
    )
    corrections_count: int = Field(alias="correctionsCount", description="Number of corrections made")
    issues_fixed: list[str] = Field(
        alias="mainIssuesFixed",
        description="Types of issues that were fixed (e.g. punctuation, capitalization, formatting)",
    )


class TranscriptAnalysis(_Schema):
    """Output of the transcript analysis pass."""

    confidence: float = Field(description="Overall confidence score (0-1)")
    detected_language: str = Field(
        alias="detectedLanguage", description="Detected language code (e.g. 'es', 'en')"
    )
    speaker_count: int = Field(alias="speakerCount", description="Estimated number of different speakers")
    content_type: Literal["meeting", "interview", "lecture", "phone_call", "other"] = Field(
        alias="contentType", description="Type of audio content"
    )
    key_topics: list[str] = Field(alias="keyTopics", description="Main topics or themes discussed")
    summary: str = Field(description="Brief summary of the content")


# --- Capability ---


class Classifier(Protocol):
    """Maps a schema plus an instruction to a raw structured answer."""

    async def classify(self, schema: type[BaseModel], prompt: str) -> dict[str, Any] | None:
        ...


async def classify_structured(
    classifier: Classifier,
    schema: type[ModelT],
    prompt: str,
) -> ModelT:
    """Make exactly one classifier call and validate the answer.

    Raises:
        InvalidSchema: if the answer is missing, not an object, or does not
            validate against ``schema``. Nothing partial is ever returned.
        ClassifierUnavailable: if the call itself failed.
    """
    raw = await classifier.classify(schema, prompt)
    if not isinstance(raw, dict):
        raise InvalidSchema(f"{schema.__name__}: classifier returned no object")
    try:
        return schema.model_validate(raw)
    except ValidationError as e:
        logger.warning(f"Discarding {schema.__name__} answer: {e.error_count()} validation error(s)")
        raise InvalidSchema(f"{schema.__name__}: {e}") from None


def _schema_instruction(schema: type[BaseModel]) -> str:
    json_schema = schema.model_json_schema(by_alias=True)
    return (
        "You are a precise extraction assistant. Respond with ONLY a JSON object "
        "that matches this JSON schema exactly (all required fields, correct types, "
        "no extra text):\n"
        f"{json.dumps(json_schema)}"
    )


class GroqClassifier:
    """Classifier backed by an OpenAI-compatible chat completions API (Groq by default)."""

    def __init__(self, config: ClassifierConfig, client: httpx.AsyncClient | None = None):
        self.config = config
        self._client = client
        self._request_count: int = 0
        self._failure_count: int = 0
        self._total_latency_ms: float = 0

    async def classify(self, schema: type[BaseModel], prompt: str) -> dict[str, Any] | None:
        if not self.config.api_key:
            raise ClassifierUnavailable("classifier API key is not configured")

        payload = {
            "model": self.config.model,
            "temperature": self.config.temperature,
            "response_format": {"type": "json_object"},
            "messages": [
                {"role": "system", "content": _schema_instruction(schema)},
                {"role": "user", "content": prompt},
            ],
        }

        start = time.monotonic()
        try:
            data = await self._post("/chat/completions", payload)
        finally:
            self._request_count += 1
            self._total_latency_ms += (time.monotonic() - start) * 1000

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            logger.warning("Classifier response had no message content")
            return None

        try:
            decoded = json.loads(content)
        except (json.JSONDecodeError, TypeError):
            logger.warning("Classifier returned non-JSON content")
            return None
        return decoded if isinstance(decoded, dict) else None

    async def _post(self, path: str, payload: dict) -> dict:
        url = self.config.base_url.rstrip("/") + path
        headers = {"Authorization": f"Bearer {self.config.api_key}"}
        try:
            if self._client is not None:
                response = await self._client.post(
                    url, json=payload, headers=headers, timeout=self.config.timeout
                )
            else:
                async with httpx.AsyncClient(timeout=self.config.timeout) as client:
                    response = await client.post(url, json=payload, headers=headers)
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as e:
            self._failure_count += 1
            logger.warning(f"Classifier request failed: {e}")
            raise ClassifierUnavailable(str(e)) from e

    def get_stats(self) -> dict[str, Any]:
        """Get client statistics."""
        avg_ms = (
            self._total_latency_ms / self._request_count
            if self._request_count > 0
            else 0
        )
        return {
            "model": self.config.model,
            "request_count": self._request_count,
            "failure_count": self._failure_count,
            "avg_latency_ms": round(avg_ms, 1),
        }
