"""Keyword extraction for terminology consistency."""

import logging
from typing import Iterable, List, Optional

from .base import BaseKeywordGenerator
from .error_handler import ErrorHandler
from ..models.core import KeywordSet


logger = logging.getLogger(__name__)

FALLBACK_KEY = 'KeywordExtraction'


def merge_keywords(*groups: Iterable[str], limit: Optional[int] = None) -> List[str]:
    """Deduplicated union of keyword groups, keeping first-seen order.

    Comparison is case-insensitive and ignores surrounding whitespace; the
    first spelling seen wins.
    """
    seen = set()
    merged: List[str] = []
    for group in groups:
        for keyword in group:
            cleaned = keyword.strip()
            if not cleaned or cleaned.casefold() in seen:
                continue
            seen.add(cleaned.casefold())
            merged.append(cleaned)
            if limit is not None and len(merged) >= limit:
                return merged
    return merged


class KeywordExtractor:
    """Combines user keywords with LLM-suggested ones.

    Generation failures degrade to the user keywords alone; extraction never
    aborts the pipeline.
    """

    def __init__(
        self,
        generator: Optional[BaseKeywordGenerator] = None,
        error_handler: Optional[ErrorHandler] = None,
        max_keywords: int = 15
    ):
        self.generator = generator
        self.error_handler = error_handler or ErrorHandler()
        self.max_keywords = max_keywords
        self.error_handler.register_fallback_handler(FALLBACK_KEY, lambda *args, **kwargs: [])

    def extract(self, title: str = "", user_keywords: Optional[List[str]] = None) -> KeywordSet:
        user = merge_keywords(user_keywords or [])

        ai_generated: List[str] = []
        if self.generator is not None and title.strip():
            ai_generated = self.error_handler.handle_with_fallback(
                self.generator.generate_keywords, FALLBACK_KEY, title, self.max_keywords
            )
            ai_generated = merge_keywords(ai_generated or [])
        elif self.generator is None:
            logger.info("No keyword generator configured, using user keywords only")

        # User keywords take priority when the list has to be capped.
        final = merge_keywords(user, ai_generated, limit=max(self.max_keywords, len(user)))

        logger.info(
            f"Keywords: {len(user)} user, {len(ai_generated)} generated, {len(final)} final"
        )
        return KeywordSet(ai_generated=ai_generated, user=user, final=final)
