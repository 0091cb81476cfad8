"""Batch speech-to-text via a whisper.cpp subprocess.

Used as the engine behind :class:`convorec.transcription.StreamingRecognizer`.
"""

from __future__ import annotations

import re
import subprocess
import tempfile
import wave
from pathlib import Path

import numpy as np

from convorec.constants import DEFAULT_LANGUAGE
from convorec.errors import TranscriptionError

_TIMESTAMP_LINE = re.compile(
    r"\[(\d{2}:\d{2}:\d{2}\.\d{3})\s*-->\s*(\d{2}:\d{2}:\d{2}\.\d{3})\]\s*(.*)"
)


class WhisperCppEngine:
    """Callable ``engine(audio_int16, sample_rate) -> text`` backed by whisper.cpp."""

    def __init__(
        self,
        whisper_binary: Path,
        model_path: Path,
        language: str = DEFAULT_LANGUAGE,
        timeout: float = 600,
    ):
        self.whisper_binary = Path(whisper_binary)
        self.model_path = Path(model_path)
        self.language = language
        self.timeout = timeout

    def __call__(self, audio: np.ndarray, sample_rate: int) -> str:
        with tempfile.NamedTemporaryFile(suffix=".wav", delete=False) as f:
            tmp_path = Path(f.name)

        try:
            with wave.open(str(tmp_path), "wb") as wf:
                wf.setnchannels(1)
                wf.setsampwidth(2)
                wf.setframerate(sample_rate)
                wf.writeframes(audio.astype(np.int16).tobytes())

            try:
                proc = subprocess.run(
                    self._build_command(tmp_path),
                    capture_output=True,
                    text=True,
                    timeout=self.timeout,
                )
            except (OSError, subprocess.TimeoutExpired) as e:
                raise TranscriptionError(f"whisper.cpp could not run: {e}") from e

            if proc.returncode != 0:
                raise TranscriptionError(
                    f"whisper.cpp failed (exit code {proc.returncode}):\n{proc.stderr}"
                )
            return parse_output(proc.stdout)
        finally:
            tmp_path.unlink(missing_ok=True)

    def _build_command(self, audio_path: Path) -> list[str]:
        """Construct the whisper.cpp CLI arguments."""
        cmd = [str(self.whisper_binary)]
        cmd.extend(["-m", str(self.model_path)])
        cmd.extend(["-f", str(audio_path)])
        cmd.extend(["--print-progress", "false"])
        if self.language != "auto":
            cmd.extend(["-l", self.language])
        return cmd


def parse_output(stdout: str) -> str:
    """Join whisper.cpp stdout into plain text.

    Lines look like ``[00:00:00.000 --> 00:00:04.520]  text``; lines
    without timestamps (``-nt`` mode) are taken as they are.
    """
    texts = []
    for line in stdout.splitlines():
        line = line.strip()
        if not line:
            continue
        m = _TIMESTAMP_LINE.match(line)
        text = m.group(3) if m else line
        if text.strip():
            texts.append(text.strip())
    return " ".join(texts)
