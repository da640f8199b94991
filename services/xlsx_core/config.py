"""Centralized engine configuration.

Single source of truth for the size limits and temp-file location used by the
package reader and the stream writer. Reads from environment variables with
sensible defaults.
"""
from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, field

# Format ceilings
MAX_COLUMNS = 16384
TOTAL_ROWS = 1048576
MAX_ROW_HEIGHT = 409
MAX_COLUMN_WIDTH = 255
MAX_CELL_TEXT_LENGTH = 32767

# Size defaults
UNZIP_SIZE_LIMIT = 16 << 30
UNZIP_XML_SIZE_LIMIT = 16 << 20
STREAM_CHUNK_SIZE = 16 << 20


@dataclass
class EngineSettings:
    """Engine settings loaded from environment.

    Usage:
        settings = get_engine_settings()
        print(settings.stream_chunk_size)  # 16777216
    """
    # Cumulative ceiling on extracted bytes when opening a package
    unzip_size_limit: int = UNZIP_SIZE_LIMIT

    # Worksheet and shared-string parts above this are spilled to temp files
    unzip_xml_size_limit: int = UNZIP_XML_SIZE_LIMIT

    # Stream writer buffer threshold before spilling to disk
    stream_chunk_size: int = STREAM_CHUNK_SIZE

    tmp_dir: str = field(default_factory=tempfile.gettempdir)


def _int_from_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    return int(raw)


def _load_settings_from_env() -> EngineSettings:
    """Load engine settings from environment variables."""
    settings = EngineSettings()

    settings.unzip_size_limit = _int_from_env("XLSX_UNZIP_SIZE_LIMIT", UNZIP_SIZE_LIMIT)
    settings.unzip_xml_size_limit = _int_from_env("XLSX_UNZIP_XML_SIZE_LIMIT", UNZIP_XML_SIZE_LIMIT)
    settings.stream_chunk_size = _int_from_env("XLSX_STREAM_CHUNK_SIZE", STREAM_CHUNK_SIZE)

    # Temp dir must exist; fall back to the system default otherwise
    tmp_dir = os.getenv("XLSX_TMP_DIR")
    if tmp_dir and os.path.isdir(tmp_dir):
        settings.tmp_dir = tmp_dir

    # The XML limit can never exceed the total limit
    if settings.unzip_xml_size_limit > settings.unzip_size_limit:
        settings.unzip_xml_size_limit = settings.unzip_size_limit

    return settings


# Singleton instance
_settings: EngineSettings | None = None


def get_engine_settings() -> EngineSettings:
    """Get the engine settings singleton.

    Settings are loaded once from environment on first access.
    """
    global _settings
    if _settings is None:
        _settings = _load_settings_from_env()
    return _settings


def reload_engine_settings() -> EngineSettings:
    """Force reload settings from environment.

    Useful for testing or after env changes.
    """
    global _settings
    _settings = _load_settings_from_env()
    return _settings
