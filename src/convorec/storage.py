"""Conversation storage: audio objects, metadata records, listing and search."""

from __future__ import annotations

import json
import logging
import os
import shutil
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from convorec.models import AudioChunk, ConversationRecord, ConversationStatus, RecordingBundle

logger = logging.getLogger(__name__)


def generate_record_id() -> str:
    """Timestamp-based id with a random suffix: YYYY-MM-DD-HHMMSS-xxxxxx."""
    return f"{datetime.now().strftime('%Y-%m-%d-%H%M%S')}-{uuid.uuid4().hex[:6]}"


class ConversationStore(ABC):
    """Binary object store for audio plus a metadata store for records."""

    @abstractmethod
    def put_audio(self, record_id: str, chunk: AudioChunk) -> str:
        """Store one chunk payload; return a reference to it."""
        ...

    @abstractmethod
    def delete_audio(self, ref: str) -> None:
        ...

    @abstractmethod
    def insert(self, record: ConversationRecord) -> None:
        ...

    @abstractmethod
    def get(self, record_id: str) -> Optional[ConversationRecord]:
        ...

    @abstractmethod
    def _save(self, record: ConversationRecord) -> None:
        ...

    @abstractmethod
    def _all(self) -> list[ConversationRecord]:
        ...

    def update(self, record_id: str, **updates) -> ConversationRecord:
        """Update fields of an existing record and stamp ``updated``."""
        with self._lock:
            record = self.get(record_id)
            if record is None:
                raise KeyError(f"Conversation not found: {record_id}")
            for name, value in updates.items():
                if not hasattr(record, name):
                    raise AttributeError(f"Unknown record field: {name!r}")
                setattr(record, name, value)
            record.updated = datetime.now(timezone.utc).isoformat()
            self._save(record)
            return record

    def list_records(
        self,
        limit: Optional[int] = 20,
        status: Optional[ConversationStatus] = None,
        owner_id: Optional[str] = None,
        search: Optional[str] = None,
        sort_by: str = "date",
    ) -> list[ConversationRecord]:
        """List records newest first, optionally filtered."""
        records = []
        for record in self._all():
            if status is not None and record.status != status:
                continue
            if owner_id is not None and record.owner_id != owner_id:
                continue
            if search and search.lower() not in record.transcript.lower():
                continue
            records.append(record)

        records.sort(key=lambda r: _sort_key(r, sort_by), reverse=(sort_by != "name"))
        return records[:limit] if limit else records

    def search_transcripts(
        self, query: str, limit: int = 20, context: int = 40
    ) -> list[tuple[ConversationRecord, list[str]]]:
        """Return records whose transcript contains *query*, with snippets."""
        query_lower = query.lower()
        results = []
        for record in self.list_records(limit=None):
            text = record.transcript
            lower = text.lower()
            snippets = []
            start = lower.find(query_lower)
            while start != -1:
                lo = max(0, start - context)
                hi = min(len(text), start + len(query) + context)
                snippets.append(text[lo:hi].strip())
                start = lower.find(query_lower, start + len(query_lower))
            if snippets:
                results.append((record, snippets))
        return results[:limit]


class FileConversationStore(ConversationStore):
    """Stores each conversation under a directory tree.

    ``<root>/<id>.meta`` holds the record as JSON and
    ``<root>/<id>/chunk-NNN.<ext>`` holds the audio chunks.
    """

    def __init__(self, root: Path):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()

    def put_audio(self, record_id: str, chunk: AudioChunk) -> str:
        ref = f"{record_id}/chunk-{chunk.index:03d}.{chunk.extension}"
        path = self.root / ref
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(chunk.payload)
        return ref

    def delete_audio(self, ref: str) -> None:
        path = self.root / ref
        path.unlink(missing_ok=True)
        parent = path.parent
        if parent != self.root and parent.exists() and not any(parent.iterdir()):
            parent.rmdir()

    def audio_path(self, ref: str) -> Path:
        return self.root / ref

    def insert(self, record: ConversationRecord) -> None:
        with self._lock:
            if self._meta_path(record.id).exists():
                raise FileExistsError(f"Conversation already exists: {record.id}")
            self._save(record)

    def get(self, record_id: str) -> Optional[ConversationRecord]:
        meta_path = self._meta_path(record_id)
        if not meta_path.exists():
            return None
        return ConversationRecord.from_dict(json.loads(meta_path.read_text()))

    def delete(self, record_id: str) -> None:
        with self._lock:
            self._meta_path(record_id).unlink(missing_ok=True)
            shutil.rmtree(self.root / record_id, ignore_errors=True)

    def _save(self, record: ConversationRecord) -> None:
        meta_path = self._meta_path(record.id)
        tmp_path = meta_path.with_suffix(".meta.tmp")
        tmp_path.write_text(json.dumps(record.to_dict(), indent=2))
        os.replace(tmp_path, meta_path)

    def _all(self) -> list[ConversationRecord]:
        records = []
        for meta_path in self.root.glob("*.meta"):
            try:
                records.append(ConversationRecord.from_dict(json.loads(meta_path.read_text())))
            except (json.JSONDecodeError, KeyError, ValueError, OSError):
                logger.warning("Skipping unreadable record %s", meta_path.name)
        return records

    def _meta_path(self, record_id: str) -> Path:
        return self.root / f"{record_id}.meta"


def write_recovery(directory: Path, bundle: RecordingBundle, **meta) -> Path:
    """Dump an unsaved recording to *directory* so it outlives the process.

    Writes the chunks as ``chunk-NNN.<ext>``, the transcript as
    ``transcript.txt`` and *meta* plus the duration as ``recording.json``.
    """
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    for chunk in bundle.chunks:
        (directory / f"chunk-{chunk.index:03d}.{chunk.extension}").write_bytes(chunk.payload)
    (directory / "transcript.txt").write_text(bundle.transcript + "\n")
    info = dict(meta, duration_seconds=bundle.duration_seconds,
                chunks=len(bundle.chunks),
                written=datetime.now(timezone.utc).isoformat())
    (directory / "recording.json").write_text(json.dumps(info, indent=2))
    logger.info("Wrote unsaved recording to %s", directory)
    return directory


class MemoryConversationStore(ConversationStore):
    """In-process store, for tests and dry runs."""

    def __init__(self):
        self.audio: dict[str, bytes] = {}
        self.records: dict[str, dict] = {}
        self._lock = threading.RLock()

    def put_audio(self, record_id: str, chunk: AudioChunk) -> str:
        ref = f"{record_id}/chunk-{chunk.index:03d}.{chunk.extension}"
        self.audio[ref] = chunk.payload
        return ref

    def delete_audio(self, ref: str) -> None:
        self.audio.pop(ref, None)

    def insert(self, record: ConversationRecord) -> None:
        with self._lock:
            if record.id in self.records:
                raise KeyError(f"Conversation already exists: {record.id}")
            self._save(record)

    def get(self, record_id: str) -> Optional[ConversationRecord]:
        data = self.records.get(record_id)
        return ConversationRecord.from_dict(data) if data is not None else None

    def _save(self, record: ConversationRecord) -> None:
        self.records[record.id] = record.to_dict()

    def _all(self) -> list[ConversationRecord]:
        return [ConversationRecord.from_dict(d) for d in list(self.records.values())]


def _sort_key(record: ConversationRecord, sort_by: str):
    if sort_by == "duration":
        return record.duration_seconds
    if sort_by == "name":
        return record.id
    return record.created
