"""
Configuration loading: YAML settings, environment overrides and pattern tables
"""
import re
import logging
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .schema import ProcessingConfig

logger = logging.getLogger(__name__)

PATTERNS_PATH = Path(__file__).parent / "config" / "patterns.yaml"

# YAML section/key -> ProcessingConfig field
YAML_KEYS = {
    ("llm", "provider"): "llm_provider",
    ("llm", "model"): "llm_model",
    ("llm", "temperature"): "llm_temperature",
    ("llm", "timeout"): "llm_timeout",
    ("llm", "ollama_base_url"): "ollama_base_url",
    ("limits", "max_file_size_mb"): "max_file_size_mb",
    ("limits", "max_pdf_pages"): "max_pdf_pages",
    ("limits", "dedupe_window_days"): "dedupe_window_days",
    ("limits", "batch_max_files"): "batch_max_files",
    ("limits", "extraction_per_minute"): "extraction_rate_limit",
    ("limits", "reprocess_per_hour"): "reprocess_rate_limit",
    ("limits", "lock_timeout_seconds"): "lock_timeout_seconds",
    ("storage", "signed_url_ttl"): "signed_url_ttl",
}


class FileSettings(ProcessingConfig):
    """ProcessingConfig whose environment variables take precedence over the values passed in"""

    @classmethod
    def settings_customise_sources(cls, settings_cls, init_settings, env_settings,
                                   dotenv_settings, file_secret_settings):
        return env_settings, init_settings


def _load_yaml(path: Path) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def load_config(path: Optional[str] = None) -> ProcessingConfig:
    """Build a ProcessingConfig from an optional YAML file, overridden by environment variables"""
    values: Dict[str, Any] = {}

    if path:
        try:
            data = _load_yaml(Path(path))
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Failed to load config file {path}: {e}")
            raise
        for (section, key), field in YAML_KEYS.items():
            section_data = data.get(section) or {}
            if key in section_data and section_data[key] is not None:
                values[field] = section_data[key]

    settings = FileSettings(**values)
    return ProcessingConfig.model_validate(settings.model_dump())


@lru_cache(maxsize=1)
def load_patterns() -> Dict[str, Any]:
    """Load the packaged pattern tables"""
    return _load_yaml(PATTERNS_PATH)


def compile_pattern(entry: Dict[str, Any]) -> Optional[re.Pattern]:
    """Compile one pattern table entry, honoring its flags"""
    flags = 0
    if entry.get("ignore_case", True):
        flags |= re.IGNORECASE
    if entry.get("multiline", False):
        flags |= re.MULTILINE
    try:
        return re.compile(entry["pattern"], flags)
    except re.error as e:
        logger.warning(f"Failed to compile pattern {entry.get('pattern')!r}: {e}")
        return None


def compile_patterns(entries: List[Dict[str, Any]]) -> List[re.Pattern]:
    """Compile a list of pattern entries, dropping invalid ones"""
    compiled = []
    for entry in entries or []:
        pattern = compile_pattern(entry)
        if pattern is not None:
            compiled.append(pattern)
    return compiled
