"""Microphone recorder using sounddevice (PortAudio)."""

from __future__ import annotations

import logging
import threading

from convorec.errors import DeviceAcquisitionError
from convorec.recorder.base import FrameCallback, Recorder, RecordingConfig

logger = logging.getLogger(__name__)


class SounddeviceRecorder(Recorder):
    """Delivers blocks from a sounddevice input stream to a callback."""

    def __init__(self):
        self._stream = None
        self._config: RecordingConfig | None = None
        self._actual_sample_rate = 0
        self._device_name = "default"
        self._lock = threading.Lock()

    def _resolve_sample_rate(self, sd, device, config: RecordingConfig) -> int:
        """Use the requested rate if the device accepts it, else its native rate."""
        try:
            sd.check_input_settings(
                device=device,
                channels=config.channels,
                dtype=config.dtype,
                samplerate=config.sample_rate,
            )
            return config.sample_rate
        except (sd.PortAudioError, ValueError):
            dev_info = sd.query_devices(device, kind="input")
            return int(dev_info["default_samplerate"])

    def open(self, config: RecordingConfig, callback: FrameCallback) -> None:
        from convorec.devices import _import_sounddevice

        with self._lock:
            if self._stream is not None:
                raise DeviceAcquisitionError("Device already open")

            try:
                sd = _import_sounddevice()
            except OSError as e:
                raise DeviceAcquisitionError(f"Audio backend unavailable: {e}") from e

            device = config.device
            stream = None
            try:
                dev_info = sd.query_devices(device, kind="input")
                sample_rate = self._resolve_sample_rate(sd, device, config)

                def _callback(indata, frames, time_info, status):
                    if status:
                        logger.debug("Input stream status: %s", status)
                    callback(indata.copy().ravel(), sample_rate, config.channels)

                stream = sd.InputStream(
                    samplerate=sample_rate,
                    channels=config.channels,
                    dtype=config.dtype,
                    device=device,
                    blocksize=config.blocksize,
                    callback=_callback,
                )
                stream.start()
            except (sd.PortAudioError, OSError, ValueError) as e:
                if stream is not None:
                    stream.close()
                raise DeviceAcquisitionError(f"Cannot open microphone: {e}") from e

            self._stream = stream
            self._config = config
            self._actual_sample_rate = sample_rate
            self._device_name = str(dev_info.get("name", device or "default"))
            logger.info("Opened input device %s at %d Hz", self._device_name, sample_rate)

    def pause(self) -> None:
        with self._lock:
            if self._stream is not None and self._stream.active:
                self._stream.stop()

    def resume(self) -> None:
        with self._lock:
            if self._stream is not None and not self._stream.active:
                self._stream.start()

    def close(self) -> None:
        with self._lock:
            stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.stop()
        finally:
            stream.close()
            logger.info("Released input device %s", self._device_name)

    def is_open(self) -> bool:
        return self._stream is not None

    @property
    def sample_rate(self) -> int:
        return self._actual_sample_rate

    @property
    def device_name(self) -> str:
        return self._device_name
