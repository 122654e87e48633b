"""Content-addressed translation cache.

Cache keys are (content hash, config fingerprint). Both are pure functions of
their inputs so that re-submitting the same track under the same settings
always lands on the same key.
"""

import hashlib
import json
import logging
import re
import threading
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Optional

from .base import BaseTaskStore
from ..models.core import CacheEntry, SubtitleEntry, TranslationConfig


logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r'\s+')
# Separates entries so that moving text across an entry boundary changes the hash.
_ENTRY_SEPARATOR = '\x1f'


def normalize_text(text: str) -> str:
    """Normalize text for fingerprinting: NFC form, whitespace runs collapsed, trimmed."""
    return _WHITESPACE.sub(' ', unicodedata.normalize('NFC', text)).strip()


def content_hash(entries: List[SubtitleEntry]) -> str:
    """SHA-256 over the normalized source text of the entries.

    Timings are not part of the hash; cached translations are re-timed onto
    the requesting segment's entries on every hit.
    """
    payload = _ENTRY_SEPARATOR.join(normalize_text(entry.text) for entry in entries)
    return hashlib.sha256(payload.encode('utf-8')).hexdigest()


def config_fingerprint(config: TranslationConfig) -> str:
    """SHA-256 over the canonical (sorted, defaults materialized) config."""
    payload = json.dumps(config.canonical(), sort_keys=True, separators=(',', ':'), ensure_ascii=False)
    return hashlib.sha256(payload.encode('utf-8')).hexdigest()


def retime(cached: List[SubtitleEntry], source: List[SubtitleEntry]) -> List[SubtitleEntry]:
    """Apply cached translated text to the source entries' timings."""
    return [
        SubtitleEntry(start=src.start, end=src.end, text=hit.text)
        for src, hit in zip(source, cached)
    ]


class CacheService:
    """Lookup and store of translated entries backed by the task store."""

    def __init__(self, store: BaseTaskStore):
        self.store = store
        # Serializes read-modify-write of access counters.
        self._lock = threading.Lock()

    def lookup(self, content_hash_value: str, fingerprint: str) -> Optional[List[SubtitleEntry]]:
        """Return cached entries for the key, or None on a miss.

        A hit increments the access count and refreshes the access time.
        """
        with self._lock:
            entry = self.store.get_cache_entry(content_hash_value, fingerprint)
            if entry is None or not entry.is_cached:
                logger.debug(f"Cache miss for {content_hash_value[:16]}...")
                return None
            entry.access_count += 1
            entry.last_accessed_at = datetime.now()
            self.store.put_cache_entry(entry)

        logger.info(
            f"Cache hit for {content_hash_value[:16]}... "
            f"({len(entry.entries)} entries, access count {entry.access_count})"
        )
        return list(entry.entries)

    def store_entries(
        self,
        content_hash_value: str,
        fingerprint: str,
        entries: List[SubtitleEntry]
    ) -> CacheEntry:
        """Store entries under the key, overwriting any previous value."""
        with self._lock:
            existing = self.store.get_cache_entry(content_hash_value, fingerprint)
            now = datetime.now()
            entry = CacheEntry(
                content_hash=content_hash_value,
                config_fingerprint=fingerprint,
                entries=list(entries),
                is_cached=True,
                access_count=existing.access_count if existing else 0,
                last_accessed_at=now,
                created_at=existing.created_at if existing else now,
            )
            self.store.put_cache_entry(entry)

        logger.debug(f"Cached {len(entries)} entries under {content_hash_value[:16]}...")
        return entry

    def lookup_segment(
        self,
        source: List[SubtitleEntry],
        config: TranslationConfig
    ) -> Optional[List[SubtitleEntry]]:
        """Convenience lookup for a list of source entries; result is re-timed."""
        cached = self.lookup(content_hash(source), config_fingerprint(config))
        if cached is None or len(cached) != len(source):
            return None
        return retime(cached, source)

    def store_segment(
        self,
        source: List[SubtitleEntry],
        config: TranslationConfig,
        translated: List[SubtitleEntry]
    ) -> CacheEntry:
        return self.store_entries(content_hash(source), config_fingerprint(config), translated)

    def get_cache_stats(self) -> Dict[str, Any]:
        """Summarize cache usage.

        Returns:
            Dictionary with total entries, total hits, average access count and
            the age in hours of the oldest entry
        """
        entries = self.store.list_cache_entries()
        if not entries:
            return {
                'total_cached_translations': 0,
                'total_cache_hits': 0,
                'average_access_count': 0.0,
                'oldest_cache_age_hours': None,
            }

        total_hits = sum(entry.access_count for entry in entries)
        oldest = min(entry.created_at for entry in entries)
        return {
            'total_cached_translations': len(entries),
            'total_cache_hits': total_hits,
            'average_access_count': total_hits / len(entries),
            'oldest_cache_age_hours': (datetime.now() - oldest).total_seconds() / 3600,
        }
