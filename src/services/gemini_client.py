"""Gemini-backed transport for segment translation, style rewrites and keywords."""

import json
import logging
import re
from typing import Any, List, Optional

from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from .base import BaseKeywordGenerator, BaseStyleService, BaseTranslationTransport
from .error_handler import ConfigurationError, TransportError
from ..models.core import StylePreference, SubtitleEntry, TranslationConfig


logger = logging.getLogger(__name__)

_CODE_FENCE = re.compile(r'^```(?:json)?\s*|\s*```$')
_NUMBERED_LINE = re.compile(r'^\s*(\d+)[.)]\s+(.*)$')

STYLE_INSTRUCTIONS = {
    StylePreference.TEENAGER_FRIENDLY: "Use words familiar to young viewers, keep the tone light and lively, avoid stiff vocabulary.",
    StylePreference.TAIWANESE_COLLOQUIAL: "Use Taiwanese everyday expressions and idioms so the lines sound local and friendly.",
    StylePreference.FORMAL: "Use formal written language with careful word choice and standard grammar.",
    StylePreference.SIMPLIFIED_TEXT: "Keep every line short and direct, remove filler words.",
    StylePreference.ACADEMIC: "Use precise academic terminology suitable for educational content.",
    StylePreference.CASUAL: "Use a relaxed conversational tone, as if friends were talking.",
    StylePreference.TECHNICAL: "Keep technical terms exact and professional.",
}


class GeminiClient(BaseTranslationTransport, BaseStyleService, BaseKeywordGenerator):
    """Thin adapter around google-genai.

    Each public call issues exactly one request; retry, timeout and rate
    limiting are owned by the segment translator.
    """

    def __init__(self, api_key: str, model: Optional[str] = None, client: Any = None):
        if not api_key and client is None:
            raise ConfigurationError("GEMINI_API_KEY is not set; the Gemini transport cannot be used")

        self.default_model = model
        if client is not None:
            self.client = client
        else:
            self.client = genai.Client(api_key=api_key)
            logger.info("Gemini API client initialized successfully")

    # Translation

    def translate(
        self,
        entries: List[SubtitleEntry],
        keywords: List[str],
        config: TranslationConfig
    ) -> List[SubtitleEntry]:
        if not entries:
            return []

        prompt = self._create_translation_prompt(entries, keywords, config)
        response_text = self._generate(prompt, self.default_model or config.model, json_output=True)
        texts = self._parse_texts(response_text)

        if len(texts) != len(entries):
            logger.warning(f"Gemini returned {len(texts)} lines for {len(entries)} input entries")

        return self._attach_timings(entries, texts)

    def _create_translation_prompt(
        self,
        entries: List[SubtitleEntry],
        keywords: List[str],
        config: TranslationConfig
    ) -> str:
        count = len(entries)
        prompt = f"Translate the following subtitle lines to {config.target_language}.\n"

        if config.taiwan_optimization:
            prompt += "Use Traditional Chinese wording and expressions as used in Taiwan.\n"
        if config.natural_tone:
            prompt += "Make the translation sound natural and fluent, not word-for-word.\n"
        if config.subtitle_timing:
            prompt += "Keep each line short enough to be read within its display time.\n"
        if keywords:
            prompt += (
                "Translate these terms consistently, always with the same rendering: "
                f"{', '.join(keywords)}\n"
            )

        prompt += f"""
Strict alignment rules:
- The input has {count} lines; the output must have exactly {count} lines.
- Translate every line on its own. Do not merge, split, skip or reorder lines.
- Do not leave any line untranslated.

Return a JSON object of the form {{"subtitles": ["line 1", "line 2", ...]}} with exactly {count} strings.

Input lines:
"""
        for i, entry in enumerate(entries, 1):
            prompt += f"{i}. {entry.text}\n"

        return prompt

    # Style rewrite

    def adjust_style(
        self,
        entries: List[SubtitleEntry],
        keywords: List[str],
        style: StylePreference,
        custom_prompt: str = ""
    ) -> List[SubtitleEntry]:
        if not entries:
            return []

        count = len(entries)
        prompt = f"""Rewrite the following translated subtitle lines in this style: {STYLE_INSTRUCTIONS[style]}
{custom_prompt}
Keep the meaning of every line. Keep exactly {count} lines in the same order.
"""
        if keywords:
            prompt += f"Keep these terms unchanged: {', '.join(keywords)}\n"
        prompt += f'\nReturn a JSON object of the form {{"subtitles": [...]}} with exactly {count} strings.\n\nLines:\n'
        for i, entry in enumerate(entries, 1):
            prompt += f"{i}. {entry.text}\n"

        texts = self._parse_texts(self._generate(prompt, self.default_model, json_output=True))
        return self._attach_timings(entries, texts)

    # Keyword generation

    def generate_keywords(self, title: str, max_keywords: int) -> List[str]:
        prompt = f"""Based on the following video title, list terms that matter for translating its subtitles accurately:
technical terms, domain concepts, names of people, places and brands, and key phrases.

Video title: {title}

Return a JSON object of the form {{"keywords": ["term", ...]}} with at most {max_keywords} terms.
"""
        response_text = self._generate(prompt, self.default_model, json_output=True)
        data = self._load_json(response_text)
        if isinstance(data, dict):
            data = data.get('keywords', [])
        if not isinstance(data, list):
            raise TransportError("Keyword response did not contain a keyword list")
        return [str(item).strip() for item in data if str(item).strip()][:max_keywords]

    # Transport

    def _generate(self, prompt: str, model: Optional[str], json_output: bool = False) -> str:
        generate_config = types.GenerateContentConfig(
            response_mime_type='application/json' if json_output else None,
            thinking_config=types.ThinkingConfig(thinking_budget=0),
        )
        try:
            response = self.client.models.generate_content(
                model=model or TranslationConfig().model,
                contents=prompt,
                config=generate_config,
            )
        except genai_errors.ClientError as e:
            if getattr(e, 'code', None) in (401, 403):
                raise ConfigurationError(f"Gemini rejected the API key: {e}") from e
            raise TransportError(f"Gemini request failed: {e}") from e
        except genai_errors.APIError as e:
            raise TransportError(f"Gemini request failed: {e}") from e

        text = getattr(response, 'text', None)
        if not text:
            raise TransportError("Gemini returned an empty response")
        return text

    @staticmethod
    def _load_json(response_text: str) -> Any:
        cleaned = _CODE_FENCE.sub('', response_text.strip())
        try:
            return json.loads(cleaned)
        except json.JSONDecodeError:
            return None

    def _parse_texts(self, response_text: str) -> List[str]:
        """Extract translated lines from a JSON or numbered-list response.

        The result is never padded or truncated; callers compare its length
        against the input.
        """
        data = self._load_json(response_text)
        if isinstance(data, dict):
            data = data.get('subtitles', data.get('translations'))
        if isinstance(data, list):
            texts = []
            for item in data:
                if isinstance(item, dict):
                    item = item.get('text', '')
                texts.append(str(item).strip())
            return texts

        texts = []
        for line in response_text.strip().split('\n'):
            line = line.strip()
            if not line:
                continue
            match = _NUMBERED_LINE.match(line)
            texts.append(match.group(2) if match else line)
        return texts

    @staticmethod
    def _attach_timings(entries: List[SubtitleEntry], texts: List[str]) -> List[SubtitleEntry]:
        """Pair output lines with source timings; surplus lines borrow the last timing."""
        last = len(entries) - 1
        return [
            SubtitleEntry(
                start=entries[min(i, last)].start,
                end=entries[min(i, last)].end,
                text=text,
                merged_count=entries[min(i, last)].merged_count,
            )
            for i, text in enumerate(texts)
        ]
