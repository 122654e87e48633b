"""Configuration management for pipeline settings and host resources.

Settings come from defaults, then environment variables, then explicit
overrides. Worker counts are recommended from the host's CPU and memory.
"""

import os
import platform
import psutil
import logging
from dataclasses import dataclass, fields
from typing import Any, Dict, List, Optional, Tuple

from .error_handler import ConfigurationError
from ..models.core import PipelineConfig, StyleAdjustmentConfig, StylePreference

logger = logging.getLogger(__name__)

ENV_PREFIX = 'SUBTITLE_TRANSLATOR_'
API_KEY_ENV = 'GEMINI_API_KEY'

_TRUE_VALUES = {'1', 'true', 'yes', 'on'}

# (key, minimum, maximum); None means unbounded.
_NUMERIC_BOUNDS = {
    'max_segment_characters': (1, None),
    'max_segment_entries': (1, None),
    'max_retries': (1, 20),
    'backoff_base_seconds': (0.0, None),
    'backoff_max_seconds': (0.0, None),
    'segment_timeout_seconds': (0.001, None),
    'max_parallel_segments': (1, 64),
    'max_parallel_llm_calls': (1, 64),
    'heartbeat_interval_seconds': (0.001, None),
    'stall_threshold_seconds': (0.001, None),
    'supervisor_interval_seconds': (0.001, None),
    'boundary_gap_tolerance': (1.0, None),
    'estimated_tokens_per_char': (0.0, None),
}

_STYLE_NUMERIC_BOUNDS = {
    'max_merge_segments': (1, None),
    'max_merge_characters': (1, None),
    'max_merge_display_time': (0.0, None),
    'min_time_gap': (0.0, None),
}


@dataclass
class HardwareInfo:
    """Information about the host the pipeline runs on."""
    cpu_count: int = 0
    total_memory_gb: float = 0.0
    available_memory_gb: float = 0.0
    platform: str = ""
    python_version: str = ""


def _coerce(raw: str, target_type: type) -> Any:
    if target_type is bool:
        return raw.strip().lower() in _TRUE_VALUES
    if target_type is int:
        return int(raw)
    if target_type is float:
        return float(raw)
    return raw


class ConfigurationManager:
    """Builds and validates PipelineConfig and recommends worker counts."""

    def __init__(self, environ: Optional[Dict[str, str]] = None):
        self.environ = environ if environ is not None else os.environ
        self.hardware_info = self._detect_hardware()
        self._config_cache: Dict[str, Any] = {}

    def _detect_hardware(self) -> HardwareInfo:
        """Detect CPU count and memory of the host.

        Returns:
            HardwareInfo object with detected capabilities
        """
        info = HardwareInfo()
        info.platform = platform.system()
        info.python_version = platform.python_version()
        info.cpu_count = psutil.cpu_count(logical=True) or 1

        memory = psutil.virtual_memory()
        info.total_memory_gb = memory.total / (1024 ** 3)
        info.available_memory_gb = memory.available / (1024 ** 3)

        logger.debug(f"Hardware detected: {info}")
        return info

    def get_env_variable(self, key: str, default: Optional[str] = None) -> Optional[str]:
        """Get environment variable with caching."""
        if key in self._config_cache:
            return self._config_cache[key]

        value = self.environ.get(key, default)
        self._config_cache[key] = value
        return value

    def _env_overrides(self) -> Dict[str, Any]:
        overrides: Dict[str, Any] = {}
        for section, target in (('', PipelineConfig), ('STYLE_', StyleAdjustmentConfig)):
            for f in fields(target):
                if f.name in ('style', 'gemini_api_key'):
                    continue
                raw = self.get_env_variable(f"{ENV_PREFIX}{section}{f.name.upper()}")
                if raw is None:
                    continue
                if f.name == 'style_preference':
                    value: Any = raw.strip().lower()
                else:
                    try:
                        value = _coerce(raw, type(f.default))
                    except ValueError as e:
                        raise ConfigurationError(
                            f"Invalid value for {ENV_PREFIX}{section}{f.name.upper()}: {raw!r}"
                        ) from e
                overrides[f"style.{f.name}" if section else f.name] = value

        api_key = self.get_env_variable(API_KEY_ENV)
        if api_key:
            overrides['gemini_api_key'] = api_key
        return overrides

    def validate_configuration(self, config: Dict[str, Any]) -> Tuple[bool, List[str]]:
        """Validate configuration settings and provide guidance.

        Args:
            config: Flat configuration dictionary; style settings use a
                "style." prefix

        Returns:
            Tuple of (is_valid, error_messages)
        """
        errors = []

        if 'gemini_api_key' in config:
            api_key = config['gemini_api_key']
            if api_key and not isinstance(api_key, str):
                errors.append("Gemini API key must be a string")
            elif api_key and len(api_key) < 10:
                errors.append("Gemini API key appears to be invalid (too short)")

        for bounds, prefix in ((_NUMERIC_BOUNDS, ''), (_STYLE_NUMERIC_BOUNDS, 'style.')):
            for name, (minimum, maximum) in bounds.items():
                key = prefix + name
                if key not in config:
                    continue
                value = config[key]
                if isinstance(value, bool) or not isinstance(value, (int, float)):
                    errors.append(f"{key} must be a number")
                elif value < minimum or (maximum is not None and value > maximum):
                    if maximum is None:
                        errors.append(f"{key} must be at least {minimum}")
                    else:
                        errors.append(f"{key} must be between {minimum} and {maximum}")

        if 'backoff_base_seconds' in config and 'backoff_max_seconds' in config:
            base, cap = config['backoff_base_seconds'], config['backoff_max_seconds']
            if isinstance(base, (int, float)) and isinstance(cap, (int, float)) and cap < base:
                errors.append("backoff_max_seconds must not be smaller than backoff_base_seconds")

        if 'heartbeat_interval_seconds' in config and 'stall_threshold_seconds' in config:
            beat, stall = config['heartbeat_interval_seconds'], config['stall_threshold_seconds']
            if isinstance(beat, (int, float)) and isinstance(stall, (int, float)) and stall <= beat:
                errors.append("stall_threshold_seconds must be larger than heartbeat_interval_seconds")

        if 'style.style_preference' in config:
            valid = [style.value for style in StylePreference]
            preference = config['style.style_preference']
            if isinstance(preference, StylePreference):
                preference = preference.value
            if preference not in valid:
                errors.append(f"Invalid style preference. Must be one of: {', '.join(valid)}")

        return len(errors) == 0, errors

    def get_recommended_config(self) -> Dict[str, Any]:
        """Recommend worker counts from CPU count and memory.

        LLM calls are network bound, so parallelism is limited mostly by
        rate limits; low-memory hosts still get fewer workers.
        """
        cpu_count = self.hardware_info.cpu_count
        config: Dict[str, Any] = {
            'max_parallel_segments': max(1, min(8, cpu_count)),
            'max_parallel_llm_calls': max(2, min(16, cpu_count * 2)),
        }
        if self.hardware_info.total_memory_gb < 4:
            config['max_parallel_segments'] = min(config['max_parallel_segments'], 2)
            config['max_parallel_llm_calls'] = min(config['max_parallel_llm_calls'], 4)
        return config

    def load_pipeline_config(
        self,
        overrides: Optional[Dict[str, Any]] = None,
        require_api_key: bool = False
    ) -> PipelineConfig:
        """Build a PipelineConfig from defaults, the environment and overrides.

        Raises:
            ConfigurationError: if the merged settings are invalid, or if
                require_api_key is set and no Gemini API key is available
        """
        merged = self._env_overrides()
        merged.update({k: v for k, v in (overrides or {}).items() if v is not None})

        is_valid, errors = self.validate_configuration(merged)
        if not is_valid:
            raise ConfigurationError("Invalid configuration: " + "; ".join(errors))

        if require_api_key and not merged.get('gemini_api_key'):
            raise ConfigurationError(
                f"{API_KEY_ENV} is not set. Get an API key at https://aistudio.google.com/apikey"
            )

        style_fields = {f.name for f in fields(StyleAdjustmentConfig)}
        style_values = {
            k[len('style.'):]: v for k, v in merged.items()
            if k.startswith('style.') and k[len('style.'):] in style_fields
        }
        if 'style_preference' in style_values and not isinstance(style_values['style_preference'], StylePreference):
            style_values['style_preference'] = StylePreference(style_values['style_preference'])
        pipeline_values = {k: v for k, v in merged.items() if not k.startswith('style.')}

        known = {f.name for f in fields(PipelineConfig)}
        unknown = sorted(set(pipeline_values) - known)
        if unknown:
            logger.warning(f"Ignoring unknown configuration keys: {', '.join(unknown)}")

        config = PipelineConfig(
            **{k: v for k, v in pipeline_values.items() if k in known and k != 'style'},
            style=StyleAdjustmentConfig(**style_values),
        )
        logger.info(
            f"Pipeline configured: {config.max_parallel_segments} segment workers, "
            f"{config.max_parallel_llm_calls} concurrent LLM calls, {config.max_retries} attempts per segment"
        )
        return config

    def get_hardware_summary(self) -> str:
        """Get a human-readable summary of host resources."""
        info = self.hardware_info
        lines = [
            "=== Hardware Summary ===",
            f"Platform: {info.platform}",
            f"Python: {info.python_version}",
            f"CPU Cores: {info.cpu_count}",
            f"Total Memory: {info.total_memory_gb:.1f} GB",
            f"Available Memory: {info.available_memory_gb:.1f} GB",
        ]
        lines.append("=" * 24)
        return "\n".join(lines)
