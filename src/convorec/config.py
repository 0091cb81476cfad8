"""Configuration loading, saving, and management."""

from __future__ import annotations

import sys
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import tomli_w

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

from convorec.constants import (
    DEFAULT_ANALYSIS_TIMEOUT,
    DEFAULT_AUDIO_FORMAT,
    DEFAULT_BITRATE,
    DEFAULT_BLOCKSIZE,
    DEFAULT_CHANNELS,
    DEFAULT_LANGUAGE,
    DEFAULT_MAX_CHUNK_SECONDS,
    DEFAULT_MIN_RECORDING_MS,
    DEFAULT_PARTIAL_INTERVAL,
    DEFAULT_SAMPLE_RATE,
    DEFAULT_SAVE_RETRIES,
    DEFAULT_SILENCE_DURATION_MS,
    DEFAULT_SILENCE_THRESHOLD_DB,
    DEFAULT_SPEAKING_THRESHOLD_DB,
    VALID_AUDIO_FORMATS,
    VALID_LOG_LEVELS,
)


@dataclass
class RecordingDefaults:
    sample_rate: int = DEFAULT_SAMPLE_RATE
    channels: int = DEFAULT_CHANNELS
    device: str = ""
    blocksize: int = DEFAULT_BLOCKSIZE
    audio_format: str = DEFAULT_AUDIO_FORMAT
    bitrate: int = DEFAULT_BITRATE


@dataclass
class VadDefaults:
    enabled: bool = True
    speaking_threshold_db: float = DEFAULT_SPEAKING_THRESHOLD_DB
    silence_threshold_db: float = DEFAULT_SILENCE_THRESHOLD_DB
    silence_duration_ms: int = DEFAULT_SILENCE_DURATION_MS
    min_recording_ms: int = DEFAULT_MIN_RECORDING_MS


@dataclass
class ChunkingDefaults:
    max_chunk_seconds: int = DEFAULT_MAX_CHUNK_SECONDS


@dataclass
class TranscriptionDefaults:
    whisper_binary: str = ""
    model_path: str = ""
    language: str = DEFAULT_LANGUAGE
    interval_seconds: float = DEFAULT_PARTIAL_INTERVAL


@dataclass
class StorageDefaults:
    data_dir: str = ""
    save_retries: int = DEFAULT_SAVE_RETRIES


@dataclass
class AnalysisDefaults:
    command: str = ""
    timeout_seconds: float = DEFAULT_ANALYSIS_TIMEOUT


@dataclass
class LoggingDefaults:
    level: str = "INFO"


@dataclass
class ConvorecConfig:
    recording: RecordingDefaults = field(default_factory=RecordingDefaults)
    vad: VadDefaults = field(default_factory=VadDefaults)
    chunking: ChunkingDefaults = field(default_factory=ChunkingDefaults)
    transcription: TranscriptionDefaults = field(default_factory=TranscriptionDefaults)
    storage: StorageDefaults = field(default_factory=StorageDefaults)
    analysis: AnalysisDefaults = field(default_factory=AnalysisDefaults)
    logging: LoggingDefaults = field(default_factory=LoggingDefaults)

    @classmethod
    def load(cls, config_path: Path | None = None) -> ConvorecConfig:
        """Load config from TOML file, falling back to defaults for missing keys."""
        config = cls()
        if config_path is None or not config_path.exists():
            return config

        with open(config_path, "rb") as f:
            data = tomllib.load(f)

        for section_field in fields(config):
            section = getattr(config, section_field.name)
            for k, v in data.get(section_field.name, {}).items():
                if hasattr(section, k):
                    setattr(section, k, v)

        return config

    def save(self, config_path: Path) -> None:
        """Write current config to TOML file."""
        config_path.parent.mkdir(parents=True, exist_ok=True)
        data = self._to_dict()
        with open(config_path, "wb") as f:
            tomli_w.dump(data, f)

    def get(self, key: str) -> Any:
        """Get a config value by dotted key (e.g., 'vad.silence_duration_ms')."""
        obj, name = self._resolve(key)
        return getattr(obj, name)

    def set(self, key: str, value: Any) -> None:
        """Set a config value by dotted key."""
        obj, name = self._resolve(key)

        # Coerce value to match the field type
        current = getattr(obj, name)
        coerced = _coerce_value(value, current, key)
        _validate_value(key, coerced)
        setattr(obj, name, coerced)

    def _resolve(self, key: str) -> tuple[Any, str]:
        section, _, name = key.partition(".")
        if not name:
            raise KeyError(f"Invalid key format: {key!r}. Use 'section.key' (e.g., 'vad.enabled')")
        obj = getattr(self, section, None)
        if obj is None or section.startswith("_"):
            raise KeyError(f"Unknown config section: {section!r}")
        if not hasattr(obj, name):
            raise KeyError(f"Unknown config key: {key!r}")
        return obj, name

    def _to_dict(self) -> dict:
        """Convert config to a nested dict for TOML serialization."""
        result = {}
        for section_field in fields(self):
            section_obj = getattr(self, section_field.name)
            section_dict = {}
            for f in fields(section_obj):
                section_dict[f.name] = getattr(section_obj, f.name)
            result[section_field.name] = section_dict
        return result


def _coerce_value(value: Any, current: Any, key: str) -> Any:
    """Coerce a string value to match the type of the current value."""
    if isinstance(value, str) and not isinstance(current, str):
        if isinstance(current, bool):
            if value.lower() in ("true", "1", "yes"):
                return True
            elif value.lower() in ("false", "0", "no"):
                return False
            raise ValueError(f"Cannot convert {value!r} to bool for key {key!r}")
        if isinstance(current, int):
            return int(value)
        if isinstance(current, float):
            return float(value)
    if isinstance(current, float) and isinstance(value, int) and not isinstance(value, bool):
        return float(value)
    return value


def _validate_value(key: str, value: Any) -> None:
    """Validate a config value."""
    if key == "recording.sample_rate" and value <= 0:
        raise ValueError(f"sample_rate must be positive, got {value}")
    if key == "recording.channels" and value <= 0:
        raise ValueError(f"channels must be positive, got {value}")
    if key == "recording.blocksize" and value <= 0:
        raise ValueError(f"blocksize must be positive, got {value}")
    if key == "recording.audio_format" and value not in VALID_AUDIO_FORMATS:
        raise ValueError(
            f"Invalid audio format: {value!r}. Choose from: {', '.join(VALID_AUDIO_FORMATS)}"
        )
    if key == "recording.bitrate" and value <= 0:
        raise ValueError(f"bitrate must be positive, got {value}")
    if key == "vad.silence_duration_ms" and value <= 0:
        raise ValueError(f"silence_duration_ms must be positive, got {value}")
    if key == "vad.min_recording_ms" and value < 0:
        raise ValueError(f"min_recording_ms must be >= 0, got {value}")
    if key.endswith("_threshold_db") and value > 0:
        raise ValueError(f"{key.rpartition('.')[2]} must be <= 0 dB, got {value}")
    if key == "chunking.max_chunk_seconds" and value < 0:
        raise ValueError(f"max_chunk_seconds must be >= 0, got {value}")
    if key == "transcription.interval_seconds" and value <= 0:
        raise ValueError(f"interval_seconds must be positive, got {value}")
    if key == "storage.save_retries" and value < 0:
        raise ValueError(f"save_retries must be >= 0, got {value}")
    if key == "analysis.timeout_seconds" and value <= 0:
        raise ValueError(f"timeout_seconds must be positive, got {value}")
    if key == "logging.level" and value.upper() not in VALID_LOG_LEVELS:
        raise ValueError(
            f"Invalid log level: {value!r}. Choose from: {', '.join(VALID_LOG_LEVELS)}"
        )
