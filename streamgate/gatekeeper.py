"""Admission service.

Ties device tracking, the decision engine and the audit log together for
each playback session. When the store cannot be read the session is denied
with STORE_UNAVAILABLE if the gatekeeper fails closed; otherwise the error
propagates to the caller.
"""

import logging
from typing import Optional

from streamgate.exceptions import StoreUnavailableError
from streamgate.models import AccessReason, AccessVerdict, AdmissionRequest
from streamgate.policies import AccessDecisionEngine, schedule
from streamgate.storage import AccessStore
from streamgate.tracking import DeviceTracker, SessionObservation

logger = logging.getLogger(__name__)


class Gatekeeper:
    """Decides whether playback sessions may continue.

    Without an explicit engine, time rules are read in this machine's local
    zone, the same as the CLI does when no timezone is configured.
    """

    def __init__(
        self,
        store: AccessStore,
        engine: Optional[AccessDecisionEngine] = None,
        tracker: Optional[DeviceTracker] = None,
        fail_closed: bool = True,
        record_decisions: bool = True,
    ) -> None:
        self.store = store
        self.engine = engine or AccessDecisionEngine(timezone=schedule.local_timezone())
        self.tracker = tracker or DeviceTracker(store)
        self.fail_closed = fail_closed
        self.record_decisions = record_decisions

    def admit(self, observation: SessionObservation) -> AccessVerdict:
        """Track a session's device, then decide and audit the session."""
        request = AdmissionRequest(
            user_id=observation.user_id,
            device_identifier=observation.device_identifier,
            source_ip=observation.source_ip or "",
            request_time=observation.observed_at,
        )

        try:
            self.tracker.observe(observation)
        except StoreUnavailableError as e:
            return self._store_failure(request, e)

        return self.check(request)

    def check(self, request: AdmissionRequest) -> AccessVerdict:
        """Decide and audit a request without recording a device sighting."""
        try:
            verdict = self.engine.evaluate(request, self.store)
        except StoreUnavailableError as e:
            return self._store_failure(request, e)

        if self.record_decisions:
            self._record(request, verdict)
        return verdict

    def _record(self, request: AdmissionRequest, verdict: AccessVerdict) -> None:
        try:
            self.store.record_decision(request, verdict)
        except StoreUnavailableError as e:
            if not self.fail_closed:
                raise
            logger.error(f"Could not record decision for {request.user_id}/{request.device_identifier}: {e}")

    def _store_failure(self, request: AdmissionRequest, error: StoreUnavailableError) -> AccessVerdict:
        if not self.fail_closed:
            raise error

        logger.error(
            f"Access store unavailable, denying {request.user_id}/{request.device_identifier}: {error}"
        )
        return AccessVerdict(
            allowed=False,
            reason=AccessReason.STORE_UNAVAILABLE,
            stop_code="STORE_UNAVAILABLE",
            message=self.engine.messages.get("STORE_UNAVAILABLE", ""),
            detail=error.message,
        )
