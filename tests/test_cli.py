"""Tests for the CLI entry point."""

import json
import shlex
import signal
import sys
import threading
import time

import pytest
import tomli_w
from click.testing import CliRunner

from convorec.cli import main
from convorec.devices import AudioDevice
from convorec.models import AnalysisResult, ConversationRecord, ConversationStatus
from convorec.recorder import MockRecorder
from convorec.storage import FileConversationStore
from convorec.transcription import ScriptedRecognizer

SCRIPT = ["hello", "thanks", "for", "calling", "how", "can", "I", "help", "you", "today"]


class _TalkingRecorder(MockRecorder):
    """Mock microphone that speaks, then goes quiet, shortly after opening."""

    def __init__(self, speech_seconds=3.0, silence_seconds=2.5, **kwargs):
        super().__init__(**kwargs)
        self._speech_seconds = speech_seconds
        self._silence_seconds = silence_seconds

    def open(self, config, callback):
        super().open(config, callback)
        threading.Thread(target=self._talk, daemon=True).start()

    def _talk(self):
        time.sleep(0.05)
        self.push_speech(self._speech_seconds)
        if self._silence_seconds:
            self.push_silence(self._silence_seconds)


def _record(monkeypatch, tmp_path, args=(), recorder=None, script=SCRIPT, interrupt_after=None):
    monkeypatch.setenv("CONVOREC_DATA_DIR", str(tmp_path))
    recorder = recorder or _TalkingRecorder()
    monkeypatch.setattr("convorec.cli._create_recorder", lambda cfg: recorder)
    monkeypatch.setattr(
        "convorec.cli._create_recognizer_factory",
        lambda cfg: (lambda: ScriptedRecognizer(script)),
    )
    if interrupt_after is not None:
        def trigger_stop():
            time.sleep(interrupt_after)
            signal.raise_signal(signal.SIGINT)
        threading.Thread(target=trigger_stop, daemon=True).start()

    runner = CliRunner()
    return runner.invoke(main, ["record", *args])


def _insert(tmp_path, record_id, transcript="hello there", created="2025-01-15T14:30:22+00:00", **kwargs):
    store = FileConversationStore(tmp_path / "conversations")
    record = ConversationRecord(
        id=record_id,
        owner_id=kwargs.pop("owner_id", "emp-1"),
        participant_id=kwargs.pop("participant_id", "cust-1"),
        audio_refs=kwargs.pop("audio_refs", []),
        transcript=transcript,
        duration_seconds=kwargs.pop("duration_seconds", 75.0),
        status=kwargs.pop("status", ConversationStatus.TRANSCRIBED),
        created=created,
        **kwargs,
    )
    store.insert(record)
    return record


def test_help():
    runner = CliRunner()
    result = runner.invoke(main, ["--help"])
    assert result.exit_code == 0
    assert "Record conversations with live transcription" in result.output


def test_version():
    runner = CliRunner()
    result = runner.invoke(main, ["--version"])
    assert result.exit_code == 0
    assert "0.1.0" in result.output


def test_subcommands_registered():
    runner = CliRunner()
    result = runner.invoke(main, ["--help"])
    for cmd in ("record", "list", "search", "show", "devices", "config"):
        assert cmd in result.output, f"Subcommand '{cmd}' not found in help output"


# ──── record ────


def test_record_stops_on_silence_and_saves(monkeypatch, tmp_path):
    result = _record(monkeypatch, tmp_path, ["--owner", "emp-7", "-p", "cust-3", "--task", "t-1"])
    assert result.exit_code == 0, result.output
    assert "Silence detected, recording stopped." in result.output
    assert "in 1 chunk(s)" in result.output
    assert "Transcript: hello thanks" in result.output
    assert "Saved conversation" in result.output

    metas = list((tmp_path / "conversations").glob("*.meta"))
    assert len(metas) == 1
    meta = json.loads(metas[0].read_text())
    assert meta["owner_id"] == "emp-7"
    assert meta["participant_id"] == "cust-3"
    assert meta["task_id"] == "t-1"
    assert meta["status"] == "transcribed"
    assert meta["transcript"].startswith("hello thanks")
    assert len(meta["audio_refs"]) == 1
    assert (tmp_path / "conversations" / meta["audio_refs"][0]).exists()
    assert (tmp_path / "logs" / "convorec.log").exists()


def test_record_splits_chunks(monkeypatch, tmp_path):
    result = _record(monkeypatch, tmp_path, ["--max-chunk", "2"])
    assert result.exit_code == 0, result.output
    assert "in 3 chunk(s)" in result.output


def test_record_no_save(monkeypatch, tmp_path):
    result = _record(monkeypatch, tmp_path, ["--no-save"])
    assert result.exit_code == 0, result.output
    assert "Transcript:" in result.output
    assert "Saved conversation" not in result.output
    assert not list((tmp_path / "conversations").glob("*.meta"))


def test_record_nothing_transcribed(monkeypatch, tmp_path):
    result = _record(monkeypatch, tmp_path, script=[])
    assert result.exit_code == 0, result.output
    assert "No speech transcribed; nothing saved." in result.output
    assert not list((tmp_path / "conversations").glob("*.meta"))


def test_record_no_vad_stops_on_ctrl_c(monkeypatch, tmp_path):
    recorder = _TalkingRecorder(speech_seconds=2.0, silence_seconds=5.0)
    result = _record(monkeypatch, tmp_path, ["--no-vad"], recorder=recorder, interrupt_after=0.5)
    assert result.exit_code == 0, result.output
    assert "Ctrl+C to stop" in result.output
    assert "Stopping recording..." in result.output
    assert "Silence detected" not in result.output
    assert "Saved conversation" in result.output


def test_record_device_unavailable(monkeypatch, tmp_path):
    result = _record(monkeypatch, tmp_path, recorder=MockRecorder(fail_with="Permission denied"))
    assert result.exit_code == 1
    assert "Permission denied" in result.output


def test_record_unknown_device(monkeypatch, tmp_path):
    monkeypatch.setattr("convorec.devices.list_devices", lambda: [])
    result = _record(monkeypatch, tmp_path, ["--device", "Headset"])
    assert result.exit_code == 1
    assert "Audio device not found: Headset" in result.output


def test_record_device_by_name(monkeypatch, tmp_path):
    devs = [AudioDevice(4, "USB Headset", 1, 16000.0, "ALSA")]
    monkeypatch.setattr("convorec.devices.list_devices", lambda: devs)
    seen = {}
    recorder = _TalkingRecorder()
    original_open = recorder.open

    def open_and_remember(config, callback):
        seen["device"] = config.device
        original_open(config, callback)

    recorder.open = open_and_remember
    result = _record(monkeypatch, tmp_path, ["-d", "headset", "--no-save"], recorder=recorder)
    assert result.exit_code == 0, result.output
    assert seen["device"] == 4


def test_record_recognizer_failure_keeps_recording(monkeypatch, tmp_path):
    monkeypatch.setenv("CONVOREC_DATA_DIR", str(tmp_path))
    monkeypatch.setattr("convorec.cli._create_recorder", lambda cfg: _TalkingRecorder())
    monkeypatch.setattr(
        "convorec.cli._create_recognizer_factory",
        lambda cfg: (lambda: ScriptedRecognizer(SCRIPT, fail_at=2)),
    )
    result = CliRunner().invoke(main, ["record"])
    assert result.exit_code == 0, result.output
    assert "Transcription failed" in result.output
    assert "Transcript: hello thanks" in result.output
    assert "Saved conversation" in result.output


def test_record_requires_recognizer_config(monkeypatch, tmp_path):
    monkeypatch.setenv("CONVOREC_DATA_DIR", str(tmp_path))
    monkeypatch.setattr("convorec.cli._create_recorder", lambda cfg: MockRecorder())
    result = CliRunner().invoke(main, ["record"])
    assert result.exit_code == 1
    assert "No speech recognizer configured" in result.output


def test_record_missing_model(monkeypatch, tmp_path):
    monkeypatch.setenv("CONVOREC_DATA_DIR", str(tmp_path))
    monkeypatch.setattr("convorec.cli._create_recorder", lambda cfg: MockRecorder())
    runner = CliRunner()
    runner.invoke(main, ["config", "transcription.whisper_binary", "whisper-cli"])
    runner.invoke(main, ["config", "transcription.model_path", str(tmp_path / "missing.bin")])
    result = runner.invoke(main, ["record"])
    assert result.exit_code == 1
    assert "Whisper model not found" in result.output


class _UnreachableStore(FileConversationStore):
    def insert(self, record):
        raise OSError("network unreachable")


class _OnceUnreachableStore(FileConversationStore):
    attempts = 0

    def insert(self, record):
        type(self).attempts += 1
        if type(self).attempts == 1:
            raise OSError("network unreachable")
        super().insert(record)


def test_record_save_failure_keeps_recording(monkeypatch, tmp_path):
    monkeypatch.setattr("convorec.cli._SAVE_RETRY_DELAY", 0)
    monkeypatch.setattr(
        "convorec.cli._open_store", lambda data_dir: _UnreachableStore(data_dir / "conversations")
    )
    result = _record(monkeypatch, tmp_path, ["--owner", "emp-7", "--save-retries", "1"])

    assert result.exit_code == 1
    assert "Failed to save conversation: network unreachable. Retrying" in result.output
    assert "Recording kept in" in result.output
    assert not list((tmp_path / "conversations").glob("*.meta"))

    (saved,) = (tmp_path / "recovery").iterdir()
    assert saved.name in result.output.replace("\n", "")
    assert (saved / "transcript.txt").read_text().startswith("hello thanks")
    assert (saved / "chunk-000.wav").read_bytes()[:4] == b"RIFF"
    info = json.loads((saved / "recording.json").read_text())
    assert info["owner_id"] == "emp-7"
    assert info["chunks"] == 1
    assert info["duration_seconds"] > 0


def test_record_save_retry_succeeds(monkeypatch, tmp_path):
    monkeypatch.setattr("convorec.cli._SAVE_RETRY_DELAY", 0)
    _OnceUnreachableStore.attempts = 0
    monkeypatch.setattr(
        "convorec.cli._open_store", lambda data_dir: _OnceUnreachableStore(data_dir / "conversations")
    )
    result = _record(monkeypatch, tmp_path)

    assert result.exit_code == 0, result.output
    assert "Retrying" in result.output
    assert "Saved conversation" in result.output
    assert len(list((tmp_path / "conversations").glob("*.meta"))) == 1
    assert not (tmp_path / "recovery").exists()


def test_record_runs_configured_analysis(monkeypatch, tmp_path):
    script = tmp_path / "analyze.py"
    script.write_text(
        "import json, sys\n"
        "request = json.load(sys.stdin)\n"
        "print('model says:')\n"
        "print(json.dumps({'overall_tone': 'friendly', 'response_quality': 'good',\n"
        "                  'red_flags': [], 'sentiment_score': 0.75,\n"
        "                  'recommendation': request['transcript'].split()[0]}))\n"
    )
    command = f"{shlex.quote(sys.executable)} {shlex.quote(str(script))}"
    (tmp_path / "config.toml").write_text(tomli_w.dumps({"analysis": {"command": command}}))

    result = _record(monkeypatch, tmp_path)
    assert result.exit_code == 0, result.output
    assert "Tone: friendly, response quality: good" in result.output

    (meta_path,) = (tmp_path / "conversations").glob("*.meta")
    meta = json.loads(meta_path.read_text())
    assert meta["status"] == "analyzed"
    assert meta["analysis"]["sentiment_score"] == 0.75
    assert meta["analysis"]["recommendation"] == "hello"


def test_record_analysis_failure_keeps_transcribed(monkeypatch, tmp_path):
    command = f"{shlex.quote(sys.executable)} -c \"import sys; sys.exit(3)\""
    (tmp_path / "config.toml").write_text(tomli_w.dumps({"analysis": {"command": command}}))

    result = _record(monkeypatch, tmp_path)
    assert result.exit_code == 0, result.output
    assert "Saved conversation" in result.output
    assert "Analysis failed" in result.output
    (meta_path,) = (tmp_path / "conversations").glob("*.meta")
    assert json.loads(meta_path.read_text())["status"] == "transcribed"


# ──── list ────


def test_list_no_conversations(monkeypatch, tmp_path):
    monkeypatch.setenv("CONVOREC_DATA_DIR", str(tmp_path))
    result = CliRunner().invoke(main, ["list"])
    assert result.exit_code == 0
    assert "No conversations found" in result.output


def test_list_with_conversations(monkeypatch, tmp_path):
    monkeypatch.setenv("CONVOREC_DATA_DIR", str(tmp_path))
    _insert(tmp_path, "2025-01-15-143022-aaaaaa")
    _insert(tmp_path, "2025-01-16-090000-bbbbbb", created="2025-01-16T09:00:00+00:00",
            status=ConversationStatus.ANALYZED, participant_id=None)

    result = CliRunner().invoke(main, ["list"])
    assert result.exit_code == 0
    lines = result.output.splitlines()
    assert "REF" in lines[0]
    assert "Participant" in lines[0]
    assert lines[2].startswith("HEAD ")
    assert "2025-01-16-090000-bbbbbb" in lines[2]
    assert "analyzed" in lines[2]
    assert lines[3].startswith("HEAD~1")
    assert "00:01:15" in lines[3]
    assert "cust-1" in lines[3]


def test_list_filters(monkeypatch, tmp_path):
    monkeypatch.setenv("CONVOREC_DATA_DIR", str(tmp_path))
    _insert(tmp_path, "r-one", transcript="I need a refund", owner_id="emp-1")
    _insert(tmp_path, "r-two", transcript="all good", owner_id="emp-2",
            status=ConversationStatus.ANALYZED)
    runner = CliRunner()

    result = runner.invoke(main, ["list", "--search", "refund"])
    assert "r-one" in result.output and "r-two" not in result.output

    result = runner.invoke(main, ["list", "--owner", "emp-2"])
    assert "r-two" in result.output and "r-one" not in result.output

    result = runner.invoke(main, ["list", "--status", "analyzed"])
    assert "r-two" in result.output and "r-one" not in result.output


def test_list_no_header(monkeypatch, tmp_path):
    monkeypatch.setenv("CONVOREC_DATA_DIR", str(tmp_path))
    _insert(tmp_path, "r-one")
    result = CliRunner().invoke(main, ["list", "--no-header"])
    assert result.exit_code == 0
    assert "REF" not in result.output
    assert "r-one" in result.output


def test_list_invalid_sort(monkeypatch, tmp_path):
    monkeypatch.setenv("CONVOREC_DATA_DIR", str(tmp_path))
    result = CliRunner().invoke(main, ["list", "--sort", "size"])
    assert result.exit_code != 0


# ──── search ────


def test_search_matches(monkeypatch, tmp_path):
    monkeypatch.setenv("CONVOREC_DATA_DIR", str(tmp_path))
    _insert(tmp_path, "r-one", transcript="The customer asked about a refund for the order.")
    _insert(tmp_path, "r-two", transcript="Nothing relevant here.")
    result = CliRunner().invoke(main, ["search", "refund"])
    assert result.exit_code == 0
    assert "r-one (HEAD" in result.output
    assert "refund" in result.output
    assert "r-two" not in result.output
    assert "1 match found." in result.output


def test_search_no_matches(monkeypatch, tmp_path):
    monkeypatch.setenv("CONVOREC_DATA_DIR", str(tmp_path))
    _insert(tmp_path, "r-one")
    result = CliRunner().invoke(main, ["search", "invoice"])
    assert result.exit_code == 0
    assert "No matches found." in result.output


# ──── show ────


def test_show_head(monkeypatch, tmp_path):
    monkeypatch.setenv("CONVOREC_DATA_DIR", str(tmp_path))
    _insert(tmp_path, "r-old", transcript="older call")
    _insert(
        tmp_path, "r-new", transcript="newest call transcript",
        created="2025-02-01T00:00:00+00:00", task_id="t-42",
        audio_refs=["r-new/chunk-000.wav"],
        status=ConversationStatus.ANALYZED,
        analysis=AnalysisResult(tone="polite", response_quality="good",
                                red_flags=["interrupted"], sentiment_score=0.25),
    )
    result = CliRunner().invoke(main, ["show"])
    assert result.exit_code == 0, result.output
    assert "ID:          r-new" in result.output
    assert "Task:        t-42" in result.output
    assert "chunk-000.wav" in result.output
    assert "Tone:        polite" in result.output
    assert "Sentiment:   +0.25" in result.output
    assert "interrupted" in result.output
    assert result.output.rstrip().endswith("newest call transcript")


def test_show_head_offset_and_id(monkeypatch, tmp_path):
    monkeypatch.setenv("CONVOREC_DATA_DIR", str(tmp_path))
    _insert(tmp_path, "r-old", transcript="older call")
    _insert(tmp_path, "r-new", transcript="newest call", created="2025-02-01T00:00:00+00:00")
    runner = CliRunner()
    assert "older call" in runner.invoke(main, ["show", "HEAD~1"]).output
    assert "older call" in runner.invoke(main, ["show", "r-old"]).output


@pytest.mark.parametrize("ref,message", [
    ("HEAD~5", "only 1 conversation(s) exist"),
    ("HEAD~x", "Invalid ref"),
    ("nope", "Conversation not found"),
])
def test_show_invalid_ref(monkeypatch, tmp_path, ref, message):
    monkeypatch.setenv("CONVOREC_DATA_DIR", str(tmp_path))
    _insert(tmp_path, "r-one")
    result = CliRunner().invoke(main, ["show", ref])
    assert result.exit_code == 1
    assert message in result.output


# ──── devices ────


def test_devices_table(monkeypatch):
    devs = [
        AudioDevice(0, "Built-in Microphone", 2, 48000.0, "ALSA"),
        AudioDevice(3, "USB Headset", 1, 16000.0, "ALSA"),
    ]
    monkeypatch.setattr("convorec.devices.list_devices", lambda: devs)
    monkeypatch.setattr("convorec.devices.get_default_device", lambda: devs[1])
    result = CliRunner().invoke(main, ["devices"])
    assert result.exit_code == 0
    lines = result.output.splitlines()
    assert "Default" in lines[0]
    assert "Built-in Microphone" in lines[2] and "*" not in lines[2]
    assert "USB Headset" in lines[3] and "*" in lines[3]


def test_devices_none(monkeypatch):
    monkeypatch.setattr("convorec.devices.list_devices", lambda: [])
    monkeypatch.setattr("convorec.devices.get_default_device", lambda: None)
    result = CliRunner().invoke(main, ["devices"])
    assert result.exit_code == 0
    assert "No audio input devices found." in result.output


def test_devices_portaudio_error(monkeypatch):
    def broken():
        raise OSError("PortAudio library not found")

    monkeypatch.setattr("convorec.devices.list_devices", broken)
    result = CliRunner().invoke(main, ["devices"])
    assert result.exit_code == 1
    assert "PortAudio library not found" in result.output


# ──── config ────


def test_config_list(monkeypatch, tmp_path):
    monkeypatch.setenv("CONVOREC_DATA_DIR", str(tmp_path))
    result = CliRunner().invoke(main, ["config", "--list"])
    assert result.exit_code == 0
    assert "recording.sample_rate = 16000" in result.output
    assert "vad.enabled = True" in result.output
    assert "chunking.max_chunk_seconds = 300" in result.output


def test_config_set_and_get(monkeypatch, tmp_path):
    monkeypatch.setenv("CONVOREC_DATA_DIR", str(tmp_path))
    runner = CliRunner()
    result = runner.invoke(main, ["config", "vad.silence_duration_ms", "1500"])
    assert result.exit_code == 0
    assert "Set vad.silence_duration_ms = 1500" in result.output
    assert (tmp_path / "config.toml").exists()

    result = runner.invoke(main, ["config", "vad.silence_duration_ms"])
    assert result.output.strip() == "1500"


def test_config_invalid(monkeypatch, tmp_path):
    monkeypatch.setenv("CONVOREC_DATA_DIR", str(tmp_path))
    runner = CliRunner()
    result = runner.invoke(main, ["config", "recording.audio_format", "mp3"])
    assert result.exit_code == 1
    assert "Invalid audio format" in result.output

    result = runner.invoke(main, ["config", "nope.key"])
    assert result.exit_code == 1
    assert "Unknown config section" in result.output
