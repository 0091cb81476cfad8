"""Conversation analysis through an external command.

The command gets ``{"record_id": ..., "transcript": ...}`` as JSON on stdin
and prints an analysis JSON object on stdout, for example::

    {"tone": "friendly", "response_quality": "good",
     "misbehavior_detected": false, "red_flags": [],
     "sentiment_score": 0.7, "recommendation": "..."}

``overall_tone`` is accepted in place of ``tone``. Text around the object
(model chatter, log lines) is ignored.
"""

from __future__ import annotations

import json
import logging
import re
import shlex
import subprocess

from convorec.constants import DEFAULT_ANALYSIS_TIMEOUT
from convorec.errors import AnalysisError
from convorec.models import AnalysisResult
from convorec.persister import Analyzer

logger = logging.getLogger(__name__)

_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


class CommandAnalyzer(Analyzer):
    """Runs *command* once per saved conversation."""

    def __init__(self, command: str | list[str], timeout: float = DEFAULT_ANALYSIS_TIMEOUT):
        self.command = shlex.split(command) if isinstance(command, str) else list(command)
        if not self.command:
            raise ValueError("Analysis command is empty")
        self.timeout = timeout

    def analyze(self, record_id: str, transcript: str) -> AnalysisResult:
        payload = json.dumps({"record_id": record_id, "transcript": transcript})
        logger.debug("Running analysis command %s for %s", self.command[0], record_id)
        try:
            proc = subprocess.run(
                self.command,
                input=payload,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise AnalysisError(record_id, f"command could not run: {e}") from e

        if proc.returncode != 0:
            raise AnalysisError(
                record_id,
                f"command failed (exit code {proc.returncode}): {proc.stderr.strip()}",
            )
        return parse_analysis(record_id, proc.stdout)


def parse_analysis(record_id: str, stdout: str) -> AnalysisResult:
    """Pull the analysis object out of *stdout*."""
    match = _JSON_OBJECT.search(stdout)
    if match is None:
        raise AnalysisError(record_id, "no JSON object in command output")
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise AnalysisError(record_id, f"invalid JSON in command output: {e}") from e
    if not isinstance(data, dict):
        raise AnalysisError(record_id, "command output is not a JSON object")

    if "tone" not in data and "overall_tone" in data:
        data["tone"] = data["overall_tone"]
    if not data.get("tone") or not data.get("response_quality"):
        raise AnalysisError(record_id, "analysis is missing tone or response_quality")
    try:
        return AnalysisResult.from_dict(data)
    except (TypeError, ValueError) as e:
        raise AnalysisError(record_id, f"malformed analysis: {e}") from e
