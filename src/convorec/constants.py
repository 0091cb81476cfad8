"""Shared constants and defaults."""

APP_NAME = "convorec"

DEFAULT_SAMPLE_RATE = 16000
DEFAULT_CHANNELS = 1
DEFAULT_BLOCKSIZE = 1024
DEFAULT_AUDIO_FORMAT = "wav"
DEFAULT_BITRATE = 128000

# Loudness thresholds in dB relative to the level ceiling.
DEFAULT_SPEAKING_THRESHOLD_DB = -35.0
DEFAULT_SILENCE_THRESHOLD_DB = -50.0
DEFAULT_SILENCE_DURATION_MS = 2000
DEFAULT_MIN_RECORDING_MS = 3000

DEFAULT_MAX_CHUNK_SECONDS = 300

DEFAULT_FFT_SIZE = 256
DEFAULT_LEVEL_CEILING = 0.25
MIN_DB = -100.0

DEFAULT_LANGUAGE = "auto"
DEFAULT_PARTIAL_INTERVAL = 3.0

VALID_AUDIO_FORMATS = ("wav", "ogg")
VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")
VALID_SORT_FIELDS = ("date", "duration", "name")

DEFAULT_ANALYSIS_TIMEOUT = 120.0
DEFAULT_SAVE_RETRIES = 2
