"""Target resolution: pick the page element that matches an intent.

Given a fresh snapshot of candidate elements and a natural-language
instruction, ask the classifier for exactly one schema-typed answer.
Retry policy belongs to the caller.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar

from pydantic import BaseModel

from concierge.classifier import Classifier, classify_structured
from concierge.errors import ClassifierUnavailable, InvalidSchema

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

# Tables are never cut: the invoice record may be in any row
MAX_MARKUP_CHARS = 1500
MAX_PROMPT_CANDIDATES = 200


class CandidateKind(Enum):
    """Element families that can be queried from a page."""
    INPUT = "input"
    BUTTON = "button"
    ANCHOR = "anchor"
    TABLE = "table"


@dataclass(frozen=True)
class CandidateElement:
    """One element proposed to the resolver. Stale after any navigation."""
    identifier: str
    visible_text: str
    raw_markup: str
    kind: CandidateKind

    def to_prompt_dict(self) -> dict:
        markup = self.raw_markup
        if self.kind != CandidateKind.TABLE and len(markup) > MAX_MARKUP_CHARS:
            markup = markup[:MAX_MARKUP_CHARS] + "..."
        return {
            "id": self.identifier,
            "text": self.visible_text,
            "type": self.kind.value,
            "html": markup,
        }


class ResolutionFailure(Enum):
    """Why no result was produced."""
    NO_CANDIDATES = "no_candidates"
    INVALID_SCHEMA = "invalid_schema"
    CLASSIFIER_UNAVAILABLE = "classifier_unavailable"


@dataclass(frozen=True)
class Resolution(Generic[ModelT]):
    """Either a validated value or the reason there is none."""
    value: ModelT | None = None
    failure: ResolutionFailure | None = None

    @property
    def ok(self) -> bool:
        return self.value is not None


def build_prompt(candidates: list[CandidateElement], instruction: str) -> str:
    """Render the candidate snapshot and the instruction into one prompt."""
    listed = [c.to_prompt_dict() for c in candidates[:MAX_PROMPT_CANDIDATES]]
    return (
        f"You are given a list of elements from a web page:\n"
        f"{json.dumps(listed, ensure_ascii=False)}\n\n"
        f"{instruction.strip()}"
    )


class TargetResolver:
    """Resolves an intent against a candidate snapshot via the classifier."""

    def __init__(self, classifier: Classifier):
        self._classifier = classifier
        self._stats = {"calls": 0, "resolved": 0, "no_candidates": 0, "invalid": 0, "unavailable": 0}

    async def resolve(
        self,
        candidates: list[CandidateElement],
        instruction: str,
        schema: type[ModelT],
    ) -> Resolution[ModelT]:
        """Resolve ``instruction`` against ``candidates`` into ``schema``.

        An empty candidate list short-circuits without calling the classifier.
        Otherwise exactly one classifier call is made.
        """
        if not candidates:
            self._stats["no_candidates"] += 1
            logger.debug(f"No candidates for {schema.__name__}, skipping classifier")
            return Resolution(failure=ResolutionFailure.NO_CANDIDATES)

        self._stats["calls"] += 1
        prompt = build_prompt(candidates, instruction)
        logger.debug(f"Resolving {schema.__name__} among {len(candidates)} candidate(s)")

        try:
            value = await classify_structured(self._classifier, schema, prompt)
        except InvalidSchema:
            self._stats["invalid"] += 1
            return Resolution(failure=ResolutionFailure.INVALID_SCHEMA)
        except ClassifierUnavailable as e:
            self._stats["unavailable"] += 1
            logger.warning(f"Classifier unavailable while resolving {schema.__name__}: {e}")
            return Resolution(failure=ResolutionFailure.CLASSIFIER_UNAVAILABLE)

        self._stats["resolved"] += 1
        return Resolution(value=value)

    def get_stats(self) -> dict[str, int]:
        return dict(self._stats)
