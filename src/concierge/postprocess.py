"""Post-processing of transcripts: cleaning, then analysis.

Both stages use the shared classifier. Each one can be switched off, and a
failing stage only degrades the result: the raw transcript is always kept.
"""

import logging
from typing import Any

from concierge.classifier import CleaningResult, Classifier, TranscriptAnalysis, classify_structured
from concierge.errors import ConciergeError
from concierge.transcription import TranscriptionResult

logger = logging.getLogger(__name__)

CLEANING_PROMPT = """You need to clean and improve this transcription while keeping it in the SAME LANGUAGE as the original.

Original transcription: "{text}"

Only make these minimal improvements:
1. Fix obvious punctuation errors
2. Correct capitalization at the beginning of sentences
3. Add paragraph breaks where natural pauses occur
4. Remove excessive filler words only if they interfere with readability
5. Fix obvious typos or speech recognition errors

IMPORTANT:
- Do NOT translate to another language
- Do NOT over-correct or change the meaning
- Keep the original tone and style
- Maintain all technical terms and proper nouns as they are

Return the cleaned text in the same language as the input."""

ANALYSIS_PROMPT = """Analyze this transcription:
"{text}"

Provide insights about:
- Content confidence and quality
- Detected language
- Number of speakers
- Type of content
- Key topics discussed
- Brief summary"""


class PostProcessor:
    """Runs cleaning then analysis over a transcription result."""

    def __init__(self, classifier: Classifier):
        self._classifier = classifier
        self._stats: dict[str, int] = {
            "cleaned": 0,
            "cleaning_failed": 0,
            "analyzed": 0,
            "analysis_failed": 0,
        }

    async def run(
        self,
        result: TranscriptionResult,
        clean: bool = True,
        analyze: bool = True,
    ) -> TranscriptionResult:
        if clean:
            result = await self._clean(result)
        if analyze:
            result = await self._analyze(result)
        return result

    async def _clean(self, result: TranscriptionResult) -> TranscriptionResult:
        logger.info("Cleaning transcription...")
        try:
            cleaning = await classify_structured(
                self._classifier, CleaningResult, CLEANING_PROMPT.format(text=result.text)
            )
        except ConciergeError as e:
            self._stats["cleaning_failed"] += 1
            logger.warning(f"Cleaning skipped: {e}")
            return result

        if not cleaning.cleaned_text.strip():
            self._stats["cleaning_failed"] += 1
            logger.warning("Cleaning returned empty text, keeping raw transcript")
            return result

        self._stats["cleaned"] += 1
        logger.info(f"Applied {cleaning.corrections_count} corrections")
        return result.with_cleaning(
            cleaning.cleaned_text, cleaning.corrections_count, cleaning.issues_fixed
        )

    async def _analyze(self, result: TranscriptionResult) -> TranscriptionResult:
        logger.info("Analyzing transcription content...")
        try:
            analysis = await classify_structured(
                self._classifier, TranscriptAnalysis, ANALYSIS_PROMPT.format(text=result.freshest_text)
            )
        except ConciergeError as e:
            self._stats["analysis_failed"] += 1
            logger.warning(f"Analysis skipped: {e}")
            return result

        self._stats["analyzed"] += 1
        logger.info(
            f"Detected: {analysis.content_type} in {analysis.detected_language} "
            f"with {analysis.speaker_count} speaker(s)"
        )
        return result.with_analysis(analysis)

    def get_stats(self) -> dict[str, Any]:
        return dict(self._stats)
