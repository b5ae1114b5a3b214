from typing import List, Optional

import pytest

from embed_gateway.services.delivery_channels import DeliveryCause, DeliveryError


class FakeChannel:
    """In-memory email channel that records sends and fails on demand."""

    def __init__(
        self,
        label: str,
        kind: str = "smtp",
        *,
        fail_with: Optional[DeliveryCause] = None,
        verify_fail_with: Optional[DeliveryCause] = None,
    ):
        self.label = label
        self.kind = kind
        self.fail_with = fail_with
        self.verify_fail_with = verify_fail_with
        self.sent: List[tuple] = []
        self.verified = 0

    async def send(self, recipient: str, subject: str, html_body: str) -> None:
        self.sent.append((recipient, subject, html_body))
        if self.fail_with is not None:
            raise DeliveryError(
                f"{self.label} failed",
                channel=self.label,
                cause=self.fail_with,
            )

    async def verify(self) -> None:
        self.verified += 1
        if self.verify_fail_with is not None:
            raise DeliveryError(
                f"{self.label} unreachable",
                channel=self.label,
                cause=self.verify_fail_with,
            )


class FakeClock:
    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def recorded_sleeps():
    sleeps: List[float] = []

    async def _sleep(seconds: float) -> None:
        sleeps.append(seconds)

    _sleep.calls = sleeps
    return _sleep


@pytest.fixture
def make_channel():
    return FakeChannel
