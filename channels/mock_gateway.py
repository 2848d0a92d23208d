"""
MockGateway — Records sends instead of delivering them.

Used for local development (gateway.provider: mock) and in tests, where
a script of outcomes drives the dispatcher through retries and failures:

    gw = MockGateway([GatewayResult.transient("503"), GatewayResult.ok()])
"""
from __future__ import annotations

import structlog
from collections import deque
from dataclasses import dataclass
from typing import Iterable, Optional, Union

from channels.base import MessageGateway
from models.schemas import GatewayResult

logger = structlog.get_logger()

ScriptedOutcome = Union[GatewayResult, Exception]


@dataclass
class RecordedSend:
    recipient: str
    text: str
    media_url: Optional[str] = None


class MockGateway(MessageGateway):
    name = "mock"

    def __init__(self, outcomes: Iterable[ScriptedOutcome] = ()):
        super().__init__()
        self.calls: list[RecordedSend] = []
        self._script: deque[ScriptedOutcome] = deque(outcomes)
        self._ok_flags: list[bool] = []

    def script(self, *outcomes: ScriptedOutcome) -> None:
        self._script.extend(outcomes)

    @property
    def delivered(self) -> list[RecordedSend]:
        """Calls whose outcome was ok."""
        return [c for c, ok in zip(self.calls, self._ok_flags) if ok]

    async def _do_send_text(self, recipient: str, text: str) -> GatewayResult:
        return self._record(RecordedSend(recipient, text))

    async def _do_send_media(self, recipient: str, media_url: str, caption: str) -> GatewayResult:
        return self._record(RecordedSend(recipient, caption, media_url))

    def _record(self, send: RecordedSend) -> GatewayResult:
        self.calls.append(send)
        outcome = self._script.popleft() if self._script else GatewayResult.ok(f"mock-{len(self.calls)}")
        if isinstance(outcome, Exception):
            self._ok_flags.append(False)
            raise outcome
        self._ok_flags.append(outcome.is_ok)
        logger.info("mock_gateway_send", to=send.recipient, media=bool(send.media_url),
                    outcome=outcome.outcome.value)
        return outcome
