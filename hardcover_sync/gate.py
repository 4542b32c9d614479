import logging
import math
import time
from typing import Callable

from .errors import CircuitOpenError, ErrorKind
from .models import GateState, GateStatus

logger = logging.getLogger(__name__)

FAILURE_THRESHOLD = 3
OPEN_TIMEOUT_SECONDS = 60.0
HALF_OPEN_PROBES = 1


class FailureGate:
    """
    Circuit breaker shared by every client in the process.

    All transitions go through the methods below; callers only ever see a
    GateStatus snapshot.
    """

    def __init__(
        self,
        threshold: int = FAILURE_THRESHOLD,
        timeout: float = OPEN_TIMEOUT_SECONDS,
        half_open_probes: int = HALF_OPEN_PROBES,
        clock: Callable[[], float] = time.time,
    ):
        self.threshold = threshold
        self.timeout = timeout
        self.half_open_probes = half_open_probes
        self._clock = clock
        self._reset_fields()

    def _reset_fields(self):
        self._state = GateState.CLOSED
        self._consecutive_failures = 0
        self._last_failure_at = 0.0
        self._half_open_probes_used = 0
        self._recovery_pending = False
        self._disconnect_notified = False

    def before_request(self):
        """Admit a request or raise CircuitOpenError without touching the network."""
        if self._state == GateState.CLOSED:
            return

        now = self._clock()
        if self._state == GateState.OPEN:
            elapsed = now - self._last_failure_at
            if elapsed < self.timeout:
                retry_in = math.ceil(self.timeout - elapsed)
                raise CircuitOpenError(
                    f"Hardcover service unavailable. Retry in {retry_in}s.",
                    retry_after=self.timeout - elapsed,
                )
            logger.info("Failure gate timeout elapsed, moving to HALF_OPEN")
            self._state = GateState.HALF_OPEN
            self._half_open_probes_used = 0

        if self._half_open_probes_used < self.half_open_probes:
            self._half_open_probes_used += 1
            return
        raise CircuitOpenError("Testing Hardcover service recovery. Please wait.")

    def record_success(self):
        if self._state == GateState.HALF_OPEN:
            logger.info("Probe succeeded, failure gate CLOSED")
            self._state = GateState.CLOSED
            self._half_open_probes_used = 0
            self._recovery_pending = True
        self._consecutive_failures = 0

    def record_failure(self, kind: ErrorKind):
        if kind == ErrorKind.CIRCUIT_OPEN:
            return
        if kind == ErrorKind.AUTH_FAILED:
            logger.info("Auth failure, not counted towards the failure gate")
            # The token is the problem, not the service
            self.release_probe()
            return

        self._last_failure_at = self._clock()

        if self._state == GateState.HALF_OPEN:
            logger.warning("Probe failed, failure gate back to OPEN")
            self._state = GateState.OPEN
            self._consecutive_failures = self.threshold
            return

        self._consecutive_failures += 1
        if self._consecutive_failures >= self.threshold:
            if self._state != GateState.OPEN:
                logger.warning(
                    f"Failure gate OPEN after {self._consecutive_failures} consecutive failures. "
                    f"Will retry in {self.timeout:.0f}s."
                )
            self._state = GateState.OPEN
        else:
            logger.info(f"Failure {self._consecutive_failures}/{self.threshold}")

    def release_probe(self):
        """Hand back an admitted HALF_OPEN probe that ended without an outcome."""
        if self._state == GateState.HALF_OPEN and self._half_open_probes_used:
            self._half_open_probes_used -= 1

    def consume_recovery(self) -> bool:
        """True exactly once after a HALF_OPEN probe closed the gate."""
        if not self._recovery_pending:
            return False
        self._recovery_pending = False
        self._disconnect_notified = False
        return True

    def claim_disconnect_notice(self) -> bool:
        """True the first time it is called while the gate is OPEN, until recovery."""
        if self._state != GateState.OPEN or self._disconnect_notified:
            return False
        self._disconnect_notified = True
        return True

    def snapshot(self) -> GateStatus:
        retry_in = 0.0
        if self._state == GateState.OPEN:
            retry_in = max(0.0, self.timeout - (self._clock() - self._last_failure_at))
        return GateStatus(
            state=self._state,
            consecutive_failures=self._consecutive_failures,
            last_failure_at=self._last_failure_at,
            retry_in=retry_in,
        )

    def reset(self):
        logger.info("Failure gate manually reset")
        self._reset_fields()
