"""Service layer for the Subtitle Translator."""

from .cache_service import CacheService, config_fingerprint, content_hash
from .config_manager import ConfigurationManager, HardwareInfo
from .error_handler import ErrorHandler, ErrorRecord, ErrorSeverity
from .keyword_extractor import KeywordExtractor
from .notification_service import LoggingNotificationSink, NotificationEmitter
from .pipeline import TranslationPipeline
from .segmenter import Segmenter, TranslationSegment
from .stall_supervisor import StallSupervisor
from .stitcher import Stitcher
from .style_adjuster import StyleAdjuster
from .subtitle_exporter import SubtitleExporter
from .task_manager import TaskManager
from .task_store import InMemoryTaskStore, SQLiteTaskStore
from .translation_service import SegmentTranslator

# GeminiClient is imported from .gemini_client directly so that google-genai
# is only loaded when the Gemini transport is used.

__all__ = [
    'CacheService',
    'config_fingerprint',
    'content_hash',
    'ConfigurationManager',
    'HardwareInfo',
    'ErrorHandler',
    'ErrorRecord',
    'ErrorSeverity',
    'KeywordExtractor',
    'LoggingNotificationSink',
    'NotificationEmitter',
    'TranslationPipeline',
    'Segmenter',
    'TranslationSegment',
    'StallSupervisor',
    'Stitcher',
    'StyleAdjuster',
    'SubtitleExporter',
    'TaskManager',
    'InMemoryTaskStore',
    'SQLiteTaskStore',
    'SegmentTranslator',
]
