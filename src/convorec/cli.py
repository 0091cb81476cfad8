"""CLI entry point for convorec."""

import collections
import os
import signal
import sys
import threading
import time

import click

from convorec import __version__
from convorec.constants import VALID_SORT_FIELDS


def _load_config():
    """Load the config, honouring a data_dir override stored in it."""
    from convorec.config import ConvorecConfig
    from convorec.paths import get_config_path, get_data_dir

    cfg = ConvorecConfig.load(get_config_path(get_data_dir()))
    data_dir = get_data_dir(cfg.storage.data_dir)
    if cfg.storage.data_dir:
        cfg = ConvorecConfig.load(get_config_path(data_dir))
    return cfg, data_dir


def _open_store(data_dir):
    from convorec.paths import get_conversations_dir
    from convorec.storage import FileConversationStore

    return FileConversationStore(get_conversations_dir(data_dir))


def _create_recorder(cfg):
    """Create the microphone recorder."""
    from convorec.recorder.sounddevice_recorder import SounddeviceRecorder

    return SounddeviceRecorder()


def _create_recognizer_factory(cfg):
    """Return a factory producing one speech recognizer per recording."""
    from pathlib import Path

    from convorec.transcription import StreamingRecognizer
    from convorec.whisper import WhisperCppEngine

    tcfg = cfg.transcription
    if not tcfg.whisper_binary or not tcfg.model_path:
        raise click.ClickException(
            "No speech recognizer configured. Set it up with:\n"
            "  convorec config transcription.whisper_binary /path/to/whisper-cli\n"
            "  convorec config transcription.model_path /path/to/ggml-base.bin"
        )
    if not Path(tcfg.model_path).exists():
        raise click.ClickException(f"Whisper model not found: {tcfg.model_path}")

    engine = WhisperCppEngine(
        whisper_binary=Path(tcfg.whisper_binary),
        model_path=Path(tcfg.model_path),
        language=tcfg.language,
    )
    return lambda: StreamingRecognizer(engine, interval_seconds=tcfg.interval_seconds)


def _create_analyzer(cfg):
    """Return the configured conversation analyzer, or None."""
    if not cfg.analysis.command:
        return None
    from convorec.analysis import CommandAnalyzer

    try:
        return CommandAnalyzer(cfg.analysis.command, timeout=cfg.analysis.timeout_seconds)
    except ValueError as e:
        raise click.ClickException(f"Invalid analysis command: {e}")


def _format_duration(seconds) -> str:
    if seconds is None:
        return "---"
    m, sec = divmod(int(seconds), 60)
    h, m = divmod(m, 60)
    return f"{h:02d}:{m:02d}:{sec:02d}"


def _tail(text: str, width: int) -> str:
    return text if len(text) <= width else "…" + text[-(width - 1):]


# Seconds between save attempts; doubled after each failure.
_SAVE_RETRY_DELAY = 1.0


@click.group()
@click.version_option(version=__version__, prog_name="convorec")
def main():
    """Record conversations with live transcription."""


@main.command()
@click.option("--owner", default=None, help="Recording owner id (default: $USER).")
@click.option("--participant", "-p", default=None, help="External participant id.")
@click.option("--task", default=None, help="Task id to attach the conversation to.")
@click.option("--device", "-d", default=None, help="Audio device name or index.")
@click.option("--no-vad", is_flag=True, help="Disable auto-stop on silence.")
@click.option("--max-chunk", type=int, default=None,
              help="Longest audio chunk in seconds (0 = no splitting).")
@click.option("--no-save", is_flag=True, help="Don't save the conversation afterwards.")
@click.option("--save-retries", type=click.IntRange(min=0), default=None,
              help="Extra save attempts before the recording is written to the recovery folder.")
def record(owner, participant, task, device, no_vad, max_chunk, no_save, save_retries):
    """Record a conversation from the microphone."""
    from convorec.encoding import get_encoder
    from convorec.errors import (
        ConvorecError,
        EmptyTranscriptError,
        PersistenceError,
        TranscriptionError,
    )
    from convorec.logging_utils import setup_logging
    from convorec.machine import RecordingStateMachine
    from convorec.models import RecordingState
    from convorec.paths import ensure_dirs, get_log_dir, get_recovery_dir
    from convorec.persister import ConversationPersister
    from convorec.recorder import RecordingConfig
    from convorec.storage import write_recovery
    from convorec.vad import VoiceActivityDetector

    cfg, data_dir = _load_config()
    ensure_dirs(data_dir)
    setup_logging(get_log_dir(data_dir), cfg.logging.level)

    device = device or cfg.recording.device or None
    if device:
        from convorec.devices import find_device

        try:
            found = find_device(device)
        except OSError as e:
            raise click.ClickException(str(e))
        if found is None:
            raise click.ClickException(
                f"Audio device not found: {device}. Run 'convorec devices' to list them."
            )
        device = found.index
    rec_config = RecordingConfig(
        sample_rate=cfg.recording.sample_rate,
        channels=cfg.recording.channels,
        device=device,
        blocksize=cfg.recording.blocksize,
    )

    vad = None
    if cfg.vad.enabled and not no_vad:
        try:
            vad = VoiceActivityDetector(
                speaking_threshold_db=cfg.vad.speaking_threshold_db,
                silence_threshold_db=cfg.vad.silence_threshold_db,
                silence_duration_ms=cfg.vad.silence_duration_ms,
                min_recording_ms=cfg.vad.min_recording_ms,
            )
        except ValueError as e:
            raise click.ClickException(f"Invalid VAD settings: {e}")

    persister = None
    if not no_save:
        persister = ConversationPersister(_open_store(data_dir), analyzer=_create_analyzer(cfg))
    if save_retries is None:
        save_retries = cfg.storage.save_retries
    machine = RecordingStateMachine(
        recorder=_create_recorder(cfg),
        recognizer_factory=_create_recognizer_factory(cfg),
        persister=persister,
        recording_config=rec_config,
        vad=vad,
        max_chunk_seconds=max_chunk if max_chunk is not None else cfg.chunking.max_chunk_seconds,
        encoder=get_encoder(cfg.recording.audio_format, cfg.recording.bitrate),
    )

    stop_event = threading.Event()
    interrupt_count = 0
    original_handler = signal.getsignal(signal.SIGINT)

    def handle_sigint(sig, frame):
        nonlocal interrupt_count
        interrupt_count += 1
        if interrupt_count >= 2:
            machine.discard()
            click.echo("\nForced exit.")
            sys.exit(1)
        click.echo("\nStopping recording...")
        stop_event.set()

    signal.signal(signal.SIGINT, handle_sigint)

    try:
        try:
            machine.start()
        except ConvorecError as e:
            raise click.ClickException(str(e))

        hint = "silence or Ctrl+C stops" if vad is not None else "Ctrl+C to stop"
        click.echo(f"Recording ({hint})...")

        blocks = " ▁▂▃▄▅▆▇█"
        history = collections.deque([0.0] * 20, maxlen=20)

        try:
            while not stop_event.is_set() and machine.poll() is RecordingState.RECORDING:
                minutes, secs = divmod(int(machine.elapsed_seconds), 60)
                lvl = min(machine.audio_level() ** 0.4, 1.0)
                history.append(lvl)
                meter = "".join(blocks[int(v * 8)] for v in history)
                led = click.style("●", fg="red", blink=True)
                text = _tail(machine.live_transcript(), 40)
                click.echo(f"\r  {led} REC {minutes:02d}:{secs:02d}  {meter}  {text}", nl=False)
                stop_event.wait(0.25)
            if machine.state in (RecordingState.RECORDING, RecordingState.PAUSED):
                machine.stop()
        except TranscriptionError as e:
            click.echo(f"\nTranscription failed: {e}")

        if machine.state is RecordingState.FAILED:
            click.echo(f"\nRecording failed: {machine.last_error}")
        elif machine.stop_reason == "silence":
            click.echo("\nSilence detected, recording stopped.")

        bundle = machine.bundle
        click.echo(
            f"\nRecorded {_format_duration(bundle.duration_seconds)} "
            f"in {len(bundle.chunks)} chunk(s)."
        )
        if bundle.transcript:
            click.echo(f"Transcript: {bundle.transcript}")

        if no_save:
            machine.discard()
            return

        owner_id = owner or os.environ.get("USER") or "unknown"
        delay = _SAVE_RETRY_DELAY
        for attempt in range(save_retries + 1):
            try:
                record_id = machine.persist(owner_id, participant, task_id=task)
                break
            except EmptyTranscriptError:
                machine.discard()
                click.echo("No speech transcribed; nothing saved.")
                return
            except PersistenceError as e:
                if attempt == save_retries:
                    target = get_recovery_dir(data_dir) / machine.session.id
                    try:
                        write_recovery(target, machine.bundle, owner_id=owner_id,
                                       participant_id=participant, task_id=task)
                    except OSError as oe:
                        raise click.ClickException(f"{e}\nCould not write recovery copy: {oe}")
                    raise click.ClickException(f"{e}\nRecording kept in {target}")
                click.echo(f"{e}. Retrying in {delay:g}s ({attempt + 1}/{save_retries})...")
                time.sleep(delay)
                delay *= 2
        click.echo(f"Saved conversation {record_id}")

        enrichment = persister.enrichment(record_id)
        if enrichment is not None:
            click.echo("Analyzing conversation...")
            analysis = enrichment.result()
            if analysis is None:
                click.echo("Analysis failed; the conversation stays transcribed.")
            else:
                click.echo(f"Tone: {analysis.tone}, response quality: {analysis.response_quality}")
    finally:
        signal.signal(signal.SIGINT, original_handler)
        if persister is not None:
            persister.close()


def _build_ref_map(store) -> dict:
    all_by_date = store.list_records(limit=None, sort_by="date")
    return {r.id: (f"HEAD~{i}" if i else "HEAD") for i, r in enumerate(all_by_date)}


def _resolve_record(ref, store):
    """Resolve a HEAD/HEAD~N/id reference to a ConversationRecord."""
    if ref in ("HEAD", "last"):
        index = 0
    elif ref.startswith("HEAD~"):
        try:
            index = int(ref[5:])
        except ValueError:
            raise click.ClickException(f"Invalid ref: {ref}")
    else:
        record = store.get(ref)
        if record is None:
            raise click.ClickException(f"Conversation not found: {ref}")
        return record

    records = store.list_records(limit=index + 1, sort_by="date")
    if index >= len(records):
        raise click.ClickException(
            f"Conversation {ref} not found (only {len(records)} conversation(s) exist)."
        )
    return records[index]


@main.command(name="list")
@click.option("--limit", "-n", default=20, help="Number of entries to show.")
@click.option("--status", default=None,
              type=click.Choice(["pending", "processing", "transcribed", "analyzed", "error"]),
              help="Only show conversations with this status.")
@click.option("--owner", default=None, help="Only show conversations recorded by this owner.")
@click.option("--search", "-s", default=None, help="Search transcript text.")
@click.option("--sort", "sort_by", default="date", type=click.Choice(VALID_SORT_FIELDS),
              help="Sort field.")
@click.option("--no-header", is_flag=True, help="Omit table header.")
def list_conversations(limit, status, owner, search, sort_by, no_header):
    """List saved conversations."""
    from convorec.models import ConversationStatus

    _, data_dir = _load_config()
    store = _open_store(data_dir)
    ref_map = _build_ref_map(store)

    records = store.list_records(
        limit=limit,
        status=ConversationStatus(status) if status else None,
        owner_id=owner,
        search=search,
        sort_by=sort_by,
    )
    if not records:
        click.echo("No conversations found.")
        return

    if not no_header:
        click.echo(f"{'REF':<9} {'ID':<25} {'Duration':>9}  {'Status':<12} {'Owner':<12} {'Participant'}")
        click.echo("-" * 88)

    for r in records:
        ref = ref_map.get(r.id, "?")
        click.echo(
            f"{ref:<9} {r.id:<25} {_format_duration(r.duration_seconds):>9}  "
            f"{r.status.value:<12} {r.owner_id:<12} {r.participant_id or ''}"
        )


@main.command()
@click.argument("query")
@click.option("--limit", "-n", default=20, help="Max conversations to show.")
def search(query, limit):
    """Search transcript text for a keyword or phrase."""
    _, data_dir = _load_config()
    store = _open_store(data_dir)
    ref_map = _build_ref_map(store)

    results = store.search_transcripts(query, limit=limit)
    if not results:
        click.echo("No matches found.")
        return

    for record, snippets in results:
        click.echo(f"── {record.id} ({ref_map.get(record.id, '?')}) ──")
        for snippet in snippets:
            click.echo(f"  …{snippet}…")
        click.echo()

    count = len(results)
    click.echo(f"{count} match{'es' if count != 1 else ''} found.")


@main.command()
@click.argument("ref", default="HEAD")
def show(ref):
    """Show a saved conversation.

    REF can be HEAD (most recent), HEAD~N (Nth previous), or a conversation id.
    """
    _, data_dir = _load_config()
    store = _open_store(data_dir)
    record = _resolve_record(ref, store)

    click.echo(f"ID:          {record.id}")
    click.echo(f"Created:     {record.created}")
    click.echo(f"Owner:       {record.owner_id}")
    click.echo(f"Participant: {record.participant_id or '-'}")
    if record.task_id:
        click.echo(f"Task:        {record.task_id}")
    click.echo(f"Duration:    {_format_duration(record.duration_seconds)}")
    click.echo(f"Status:      {record.status.value}")
    if record.error_message:
        click.echo(f"Error:       {record.error_message}")
    for audio_ref in record.audio_refs:
        click.echo(f"Audio:       {store.audio_path(audio_ref)}")

    if record.analysis is not None:
        a = record.analysis
        click.echo("")
        click.echo(f"Tone:        {a.tone}")
        click.echo(f"Quality:     {a.response_quality}")
        click.echo(f"Sentiment:   {a.sentiment_score:+.2f}")
        if a.misbehavior_detected or a.red_flags:
            click.echo(f"Red flags:   {', '.join(a.red_flags) or 'misbehavior detected'}")
        if a.recommendation:
            click.echo(f"Advice:      {a.recommendation}")

    click.echo("")
    click.echo(record.transcript)


@main.command()
def devices():
    """List available audio input devices."""
    from convorec.devices import get_default_device, list_devices

    try:
        devs = list_devices()
        default = get_default_device()
    except OSError as e:
        raise click.ClickException(str(e))

    if not devs:
        click.echo("No audio input devices found.")
        return

    click.echo(f"{'Idx':<5} {'Name':<45} {'Ch':>3} {'Rate':>7} {'Default':>8}  {'Host API'}")
    click.echo("-" * 90)
    for dev in devs:
        mark = "*" if default is not None and dev.index == default.index else ""
        click.echo(
            f"{dev.index:<5} {dev.name:<45} {dev.max_input_channels:>3} "
            f"{dev.default_samplerate:>7.0f} {mark:>8}  {dev.hostapi}"
        )


@main.command()
@click.argument("key", required=False)
@click.argument("value", required=False)
@click.option("--list", "list_all", is_flag=True, help="Show all configuration values.")
def config(key, value, list_all):
    """View or set configuration."""
    from convorec.paths import get_config_path

    cfg, data_dir = _load_config()
    config_path = get_config_path(data_dir)

    if list_all or (key is None and value is None):
        for section_name, section_dict in cfg._to_dict().items():
            for k, v in section_dict.items():
                click.echo(f"{section_name}.{k} = {v!r}")
        return

    if value is None:
        try:
            click.echo(cfg.get(key))
        except KeyError as e:
            raise click.ClickException(str(e))
        return

    try:
        cfg.set(key, value)
    except (KeyError, ValueError) as e:
        raise click.ClickException(str(e))
    cfg.save(config_path)
    click.echo(f"Set {key} = {cfg.get(key)!r}")
