from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable

from app.core.config import settings
from app.schemas.fba_inbound import OperationProblem

logger = logging.getLogger(__name__)

PENDING = "pending"
SUCCESS = "success"
FAILED = "failed"

_REMOTE_STATUS_MAP = {
    "IN_PROGRESS": PENDING,
    "SUCCESS": SUCCESS,
    "FAILED": FAILED,
}


@dataclass
class OperationOutcome:
    operation_id: str
    status: str
    problems: list[OperationProblem] = field(default_factory=list)
    attempts: int = 0
    waited_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status == SUCCESS

    @property
    def failed(self) -> bool:
        return self.status == FAILED

    @property
    def still_pending(self) -> bool:
        return self.status == PENDING

    def problem_summary(self) -> str:
        return "; ".join(f"{p.code}: {p.message}" for p in self.problems) or "Unknown error"


class OperationPoller:
    """
    Waits for a remote inbound operation to leave IN_PROGRESS.

    Never raises on timeout: a budget overrun comes back as a PENDING outcome,
    because the remote side effect may still land later.
    """

    def __init__(
        self,
        client,
        *,
        timeout_seconds: float | None = None,
        interval_seconds: float | None = None,
        backoff: float | None = None,
        max_interval_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._client = client
        self._timeout = float(
            settings.FBA_OPERATION_POLL_TIMEOUT_SECONDS if timeout_seconds is None else timeout_seconds
        )
        self._interval = max(
            0.0,
            float(
                settings.FBA_OPERATION_POLL_INTERVAL_SECONDS
                if interval_seconds is None
                else interval_seconds
            ),
        )
        self._backoff = max(1.0, float(settings.FBA_OPERATION_POLL_BACKOFF if backoff is None else backoff))
        self._max_interval = float(
            settings.FBA_OPERATION_POLL_MAX_INTERVAL_SECONDS
            if max_interval_seconds is None
            else max_interval_seconds
        )
        self._clock = clock
        self._sleep = sleep

    def wait(self, operation_id: str) -> OperationOutcome:
        started = self._clock()
        deadline = started + self._timeout
        delay = self._interval
        attempts = 0

        while True:
            attempts += 1
            status = self._client.get_inbound_operation_status(operation_id)
            state = _REMOTE_STATUS_MAP.get((status.operation_status or "").upper(), PENDING)
            now = self._clock()
            if state != PENDING:
                return OperationOutcome(
                    operation_id=operation_id,
                    status=state,
                    problems=list(status.operation_problems),
                    attempts=attempts,
                    waited_seconds=now - started,
                )

            remaining = deadline - now
            if remaining <= 0:
                logger.warning(
                    "fba_operation_poll_timeout operation_id=%s attempts=%s waited=%.1fs",
                    operation_id,
                    attempts,
                    now - started,
                )
                return OperationOutcome(
                    operation_id=operation_id,
                    status=PENDING,
                    attempts=attempts,
                    waited_seconds=now - started,
                )

            self._sleep(min(delay, remaining))
            delay = min(delay * self._backoff, self._max_interval)
