"""Pending yes/no confirmations for destructive commands."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


class ConfirmationState(str, Enum):
    AWAITING = "awaiting"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"


class ConfirmationError(Exception):
    """Raised for unknown requests or resolution by the wrong user."""


@dataclass
class PendingConfirmation:
    request_id: str
    user_id: str
    deadline: float
    state: ConfirmationState = ConfirmationState.AWAITING
    _event: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def settled(self) -> bool:
        return self.state is not ConfirmationState.AWAITING

    def _settle(self, state: ConfirmationState) -> None:
        self.state = state
        self._event.set()


class ConfirmationRegistry:
    """Tracks confirmation requests; each one settles exactly once."""

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.timeout = timeout
        self.clock = clock
        self._pending: dict[str, PendingConfirmation] = {}

    def open(self, user_id: str) -> PendingConfirmation:
        request = PendingConfirmation(
            request_id=uuid.uuid4().hex,
            user_id=str(user_id),
            deadline=self.clock() + self.timeout,
        )
        self._pending[request.request_id] = request
        return request

    def get(self, request_id: str) -> PendingConfirmation:
        try:
            return self._pending[request_id]
        except KeyError:
            raise ConfirmationError(f"Unknown confirmation request {request_id}") from None

    def resolve(self, request_id: str, user_id: str, confirmed: bool) -> ConfirmationState:
        """Settle a request. Late answers settle it as timed out."""
        request = self.get(request_id)
        if request.settled:
            return request.state
        if str(user_id) != request.user_id:
            raise ConfirmationError("Only the user who started this request can answer it")

        if self.clock() >= request.deadline:
            request._settle(ConfirmationState.TIMED_OUT)
        elif confirmed:
            request._settle(ConfirmationState.CONFIRMED)
        else:
            request._settle(ConfirmationState.CANCELLED)
        logger.info("Confirmation %s %s", request_id, request.state.value)
        return request.state

    async def wait(self, request_id: str) -> ConfirmationState:
        """Block until the request settles or its deadline passes."""
        request = self.get(request_id)
        remaining = request.deadline - self.clock()
        if not request.settled:
            try:
                await asyncio.wait_for(request._event.wait(), timeout=max(remaining, 0))
            except asyncio.TimeoutError:
                if not request.settled:
                    request._settle(ConfirmationState.TIMED_OUT)
        self._pending.pop(request_id, None)
        return request.state
