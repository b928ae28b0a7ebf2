"""Device tracking from observed playback sessions.

The first time a (user, device) pair is seen it is stored as pending and the
new-device callback fires once. Later sightings only refresh the
informational fields (last seen, address, session count).
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from streamgate.models import Device
from streamgate.storage import AccessStore

logger = logging.getLogger(__name__)

# Type alias for the new-device callback
NewDeviceHandler = Callable[[Device], None]


@dataclass
class SessionObservation:
    """A playback session as reported by the media server."""

    user_id: str
    device_identifier: str
    source_ip: Optional[str] = None
    session_key: Optional[str] = None
    username: Optional[str] = None
    device_name: Optional[str] = None
    device_platform: Optional[str] = None
    device_product: Optional[str] = None
    device_version: Optional[str] = None
    observed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class DeviceTracker:
    """Records session sightings and announces devices seen for the first time."""

    def __init__(
        self,
        store: AccessStore,
        on_new_device: Optional[NewDeviceHandler] = None,
    ) -> None:
        """Initialize the tracker.

        Args:
            store: Connected access store
            on_new_device: Called once with each newly created pending device
        """
        self.store = store
        self.on_new_device = on_new_device

    def observe(self, observation: SessionObservation) -> tuple[Device, bool]:
        """Record one sighting.

        Returns:
            Tuple of (Device, created)
        """
        device, created = self.store.upsert_device_observation(
            observation.user_id,
            observation.device_identifier,
            now=observation.observed_at,
            ip_address=observation.source_ip,
            session_key=observation.session_key,
            username=observation.username,
            device_name=observation.device_name,
            device_platform=observation.device_platform,
            device_product=observation.device_product,
            device_version=observation.device_version,
        )

        if created and self.on_new_device is not None:
            try:
                self.on_new_device(device)
            except Exception as e:
                # A failing notifier must not affect admission
                logger.error(f"Error in new-device handler for {device.device_identifier}: {e}")

        return device, created
