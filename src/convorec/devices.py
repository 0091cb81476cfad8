"""Audio input device enumeration."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class AudioDevice:
    index: int
    name: str
    max_input_channels: int
    default_samplerate: float
    hostapi: str


def _import_sounddevice():
    """Import sounddevice, raising a clear error on library conflicts."""
    try:
        import sounddevice as sd
        return sd
    except OSError as e:
        if "GLIBCXX" in str(e) or "libstdc++" in str(e):
            raise OSError(
                "PortAudio failed to load due to a libstdc++ conflict (likely Anaconda).\n"
                "Fix: run with the system libstdc++:\n"
                "  LD_PRELOAD=/lib/x86_64-linux-gnu/libstdc++.so.6 convorec devices\n"
                "Or remove Anaconda from your PATH/environment."
            ) from e
        raise


def list_devices() -> list[AudioDevice]:
    """Enumerate available input devices."""
    sd = _import_sounddevice()

    raw_devices = sd.query_devices()
    hostapis = sd.query_hostapis()
    results = []

    for i, dev in enumerate(raw_devices):
        if dev["max_input_channels"] < 1:
            continue
        results.append(AudioDevice(
            index=i,
            name=dev["name"],
            max_input_channels=dev["max_input_channels"],
            default_samplerate=dev["default_samplerate"],
            hostapi=_hostapi_name(hostapis, dev["hostapi"]),
        ))

    return results


def get_default_device() -> AudioDevice | None:
    """Get the system default input device."""
    sd = _import_sounddevice()

    try:
        info = sd.query_devices(kind="input")
    except sd.PortAudioError:
        return None

    hostapis = sd.query_hostapis()
    idx = sd.default.device[0] if isinstance(sd.default.device, (list, tuple)) else sd.default.device

    return AudioDevice(
        index=idx,
        name=info["name"],
        max_input_channels=info["max_input_channels"],
        default_samplerate=info["default_samplerate"],
        hostapi=_hostapi_name(hostapis, info["hostapi"]),
    )


def find_device(query: str) -> AudioDevice | None:
    """Find an input device by index or case-insensitive name substring."""
    devices = list_devices()
    if query.isdigit():
        idx = int(query)
        return next((d for d in devices if d.index == idx), None)
    q = query.lower()
    return next((d for d in devices if q in d.name.lower()), None)


def _hostapi_name(hostapis, index: int) -> str:
    return hostapis[index]["name"] if index < len(hostapis) else ""
