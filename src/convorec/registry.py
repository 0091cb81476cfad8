"""Process-wide ownership of the microphone and the active recognizer."""

from __future__ import annotations

import logging
import threading
from typing import Optional, Protocol

from convorec.errors import DeviceAcquisitionError

logger = logging.getLogger(__name__)


class Abortable(Protocol):
    def abort(self) -> None:
        ...


class SessionRegistry:
    """Tracks which session owns the microphone and which recognizer is live.

    At most one owner may hold the device and at most one transcription
    handle may be active; activating a new handle aborts the previous one.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._device_owner: Optional[object] = None
        self._active: Optional[Abortable] = None

    def claim_device(self, owner: object) -> None:
        with self._lock:
            if self._device_owner is not None and self._device_owner is not owner:
                raise DeviceAcquisitionError("Microphone is in use by another recording")
            self._device_owner = owner

    def release_device(self, owner: object) -> None:
        with self._lock:
            if self._device_owner is owner:
                self._device_owner = None

    @property
    def device_owner(self) -> Optional[object]:
        return self._device_owner

    def activate(self, handle: Abortable) -> None:
        with self._lock:
            previous, self._active = self._active, handle
        if previous is not None and previous is not handle:
            logger.info("Stopping previously active recognizer")
            previous.abort()

    def deactivate(self, handle: Abortable) -> None:
        with self._lock:
            if self._active is handle:
                self._active = None

    @property
    def active(self) -> Optional[Abortable]:
        return self._active


default_registry = SessionRegistry()
