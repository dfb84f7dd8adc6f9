"""Best-effort device history per subject.

History lives in process memory only and is lost on restart; callers must not
depend on it for security decisions. Every device is classified as
``DeviceRiskLevel.LOW`` since no escalation policy exists yet.
"""

import asyncio
import logging
import uuid
from dataclasses import replace
from datetime import timedelta

from sessionguard.core.clock import Clock, utc_now

from .types import DeviceInfo, DeviceRiskLevel, TrackedDevice

logger = logging.getLogger(__name__)

ANONYMOUS_SUBJECT = ""


class DeviceTracker:
    """Tracks which fingerprints each subject has logged in from."""

    def __init__(
        self,
        clock: Clock = utc_now,
        *,
        trust_duration: timedelta = timedelta(days=30),
        retention: timedelta = timedelta(days=90),
    ):
        self._clock = clock
        self.trust_duration = trust_duration
        self.retention = retention
        self._devices: dict[tuple[str, str], TrackedDevice] = {}
        self._lock = asyncio.Lock()

    async def track(self, device_info: DeviceInfo, subject_id: str | None = None) -> TrackedDevice:
        """Record a sighting of ``device_info`` and return the updated summary."""
        key = (subject_id or ANONYMOUS_SUBJECT, device_info.fingerprint)
        async with self._lock:
            now = self._clock()
            device = self._devices.get(key)
            if device is None:
                device = TrackedDevice(
                    device_id=str(uuid.uuid4()),
                    subject_id=subject_id,
                    device_fingerprint=device_info.fingerprint,
                    device_info=device_info,
                    first_seen_at=now,
                    last_seen_at=now,
                )
                self._devices[key] = device
                logger.debug(f"First sighting of device {device_info.fingerprint[:8]}")
            else:
                device.device_info = device_info
                device.last_seen_at = now
                device.session_count += 1
            device.is_trusted = now - device.first_seen_at >= self.trust_duration
            device.risk_level = DeviceRiskLevel.LOW
            return replace(device)

    async def is_new_device(self, subject_id: str, fingerprint: str) -> bool:
        async with self._lock:
            return (subject_id, fingerprint) not in self._devices

    async def history(self, subject_id: str) -> list[TrackedDevice]:
        """Devices seen for ``subject_id``, most recently seen first."""
        async with self._lock:
            now = self._clock()
            devices = [
                replace(d, is_trusted=now - d.first_seen_at >= self.trust_duration)
                for (subject, _), d in self._devices.items()
                if subject == subject_id
            ]
        devices.sort(key=lambda d: d.last_seen_at, reverse=True)
        for index, device in enumerate(devices):
            device.is_current_device = index == 0
        return devices

    async def count(self) -> int:
        async with self._lock:
            return len(self._devices)

    async def sweep_stale(self) -> int:
        """Forget devices not seen within ``retention``."""
        async with self._lock:
            cutoff = self._clock() - self.retention
            stale = [key for key, d in self._devices.items() if d.last_seen_at <= cutoff]
            for key in stale:
                del self._devices[key]
        return len(stale)
