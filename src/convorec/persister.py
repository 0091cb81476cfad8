"""Saving finished conversations and enriching them with analysis.

The primary save (audio + transcript + metadata) either succeeds or raises
:class:`PersistenceError`. Analysis runs afterwards on a worker pool and
may fail without affecting the saved record, which then stays at
``transcribed``.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Optional, Sequence

from convorec.errors import AnalysisError, EmptyTranscriptError, PersistenceError
from convorec.models import AnalysisResult, AudioChunk, ConversationRecord, ConversationStatus
from convorec.storage import ConversationStore, generate_record_id

logger = logging.getLogger(__name__)


class Analyzer(ABC):
    """External "analyze conversation" capability."""

    @abstractmethod
    def analyze(self, record_id: str, transcript: str) -> AnalysisResult:
        ...


class ConversationPersister:
    """Stores recordings and fires best-effort analysis.

    Parameters
    ----------
    store : ConversationStore
        Where audio and records go.
    analyzer : Analyzer | None
        Enrichment step; skipped when None.
    executor : ThreadPoolExecutor | None
        Pool for enrichment. One is created (and owned) when not given.
    max_tracked : int
        How many enrichment futures to keep for :meth:`enrichment`. Finished
        ones are dropped oldest first once the limit is passed.
    """

    def __init__(
        self,
        store: ConversationStore,
        analyzer: Optional[Analyzer] = None,
        executor: Optional[ThreadPoolExecutor] = None,
        max_tracked: int = 256,
    ):
        self.store = store
        self._analyzer = analyzer
        self._owns_executor = executor is None and analyzer is not None
        if self._owns_executor:
            executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="convorec-analysis")
        self._executor = executor
        self._pending: dict[str, Future] = {}
        self._max_tracked = max_tracked

    def persist(
        self,
        owner_id: str,
        participant_id: Optional[str],
        transcript: str,
        chunks: Sequence[AudioChunk],
        duration_seconds: float,
        task_id: Optional[str] = None,
    ) -> str:
        """Save one conversation and return its record id.

        Raises EmptyTranscriptError before any I/O when *transcript* is blank,
        and PersistenceError (with any uploaded audio removed) when the
        primary save fails.
        """
        if not transcript or not transcript.strip():
            raise EmptyTranscriptError()

        record_id = generate_record_id()
        refs: list[str] = []
        try:
            for chunk in sorted(chunks, key=lambda c: c.index):
                refs.append(self.store.put_audio(record_id, chunk))
            record = ConversationRecord(
                id=record_id,
                owner_id=owner_id,
                participant_id=participant_id or None,
                audio_refs=refs,
                transcript=transcript.strip(),
                duration_seconds=round(float(duration_seconds), 3),
                status=ConversationStatus.TRANSCRIBED,
                task_id=task_id,
            )
            self.store.insert(record)
        except Exception as exc:
            self._rollback(refs)
            raise PersistenceError(f"Failed to save conversation: {exc}") from exc

        logger.info(
            "Saved conversation %s (%d chunk(s), %.1fs)", record_id, len(refs), duration_seconds
        )

        if self._analyzer is not None:
            try:
                future = self._executor.submit(self._enrich, record_id, record.transcript)
            except RuntimeError as exc:
                # Pool already shut down; the record itself is saved.
                error = AnalysisError(record_id, str(exc))
                logger.warning("%s; record stays transcribed", error)
            else:
                self._pending[record_id] = future
                self._prune()
        return record_id

    def enrichment(self, record_id: str) -> Optional[Future]:
        """The pending/finished enrichment future for *record_id*, if any.

        The future resolves to the AnalysisResult, or None when analysis
        failed; it never raises.
        """
        return self._pending.get(record_id)

    def close(self, wait: bool = True) -> None:
        if self._owns_executor and self._executor is not None:
            self._executor.shutdown(wait=wait)

    # -- internal --

    def _enrich(self, record_id: str, transcript: str) -> Optional[AnalysisResult]:
        try:
            result = self._analyzer.analyze(record_id, transcript)
            self.store.update(record_id, status=ConversationStatus.ANALYZED, analysis=result)
        except Exception as exc:
            error = AnalysisError(record_id, str(exc) or type(exc).__name__)
            logger.warning("%s; record stays transcribed", error, exc_info=exc)
            return None
        logger.info("Conversation %s analyzed", record_id)
        return result

    def _prune(self) -> None:
        excess = len(self._pending) - self._max_tracked
        if excess <= 0:
            return
        for record_id in [rid for rid, f in self._pending.items() if f.done()][:excess]:
            del self._pending[record_id]

    def _rollback(self, refs: list[str]) -> None:
        for ref in refs:
            try:
                self.store.delete_audio(ref)
            except OSError:
                logger.warning("Could not remove orphaned audio %s", ref, exc_info=True)
