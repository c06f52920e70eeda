"""Shared test fixtures."""
from __future__ import annotations

from collections.abc import AsyncGenerator
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from careflow.core.automation import AutomationEngine
from careflow.core.constants import Channel
from careflow.core.types import (
    Appointment,
    Client,
    MessageTemplate,
    ProviderResult,
)
from careflow.messaging.providers import MessageProvider, ProviderChain
from careflow.messaging.service import MessageDeliveryService
from careflow.store.memory import InMemoryRecordStore, InMemoryWorkflowRepository

ORG = "org-1"


class FakeClock:
    """Deterministic, manually advanced clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingProvider(MessageProvider):
    """In-memory provider that records every message it is asked to send."""

    def __init__(
        self,
        name: str,
        channel: Channel,
        *,
        priority: int = 1,
        available: bool = True,
        fail_with: Exception | None = None,
        reject: str | None = None,
    ) -> None:
        super().__init__(priority=priority)
        self.name = name
        self.channel = channel
        self.available = available
        self.fail_with = fail_with
        self.reject = reject
        self.sent: list[dict[str, Any]] = []

    def is_available(self) -> bool:
        return self.available

    async def send_message(
        self, body: str, recipient: str, meta: dict[str, Any] | None = None
    ) -> ProviderResult:
        if self.fail_with is not None:
            raise self.fail_with
        if self.reject is not None:
            return ProviderResult(success=False, error=self.reject)
        self.sent.append({"body": body, "recipient": recipient, "meta": meta or {}})
        return ProviderResult(success=True, external_id=f"{self.name}-{len(self.sent)}")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def client() -> Client:
    return Client(
        id="client-1",
        org_id=ORG,
        full_name="Ana Silva",
        email="ana@example.com",
        phones=["+15550001111"],
        tags=["vip"],
    )


@pytest.fixture
def records(client: Client, clock: FakeClock) -> InMemoryRecordStore:
    store = InMemoryRecordStore()
    store.add_client(client)
    store.add_appointment(
        Appointment(
            id="appt-1",
            org_id=ORG,
            client_id=client.id,
            type="Botox Touch-up",
            title="Botox Touch-up",
            start_time=clock.now + timedelta(days=2),
            status="completed",
        )
    )
    store.add_template(
        MessageTemplate(
            id="tpl-sms",
            org_id=ORG,
            name="Thanks SMS",
            channel=Channel.SMS,
            body="Hi {first_name}, thanks for visiting {business_name}!",
        )
    )
    store.add_template(
        MessageTemplate(
            id="tpl-email",
            org_id=ORG,
            name="Follow-up email",
            channel=Channel.EMAIL,
            subject="How was your {appointment_type}?",
            body="Dear {client_name}, we hope you enjoyed it. {review_link}",
        )
    )
    return store


@pytest.fixture
def repository() -> InMemoryWorkflowRepository:
    return InMemoryWorkflowRepository()


@pytest.fixture
def make_provider() -> type[RecordingProvider]:
    """The recording provider class, for tests that build their own chains."""
    return RecordingProvider


@pytest.fixture
def sms_provider() -> RecordingProvider:
    return RecordingProvider("sms-primary", Channel.SMS)


@pytest.fixture
def email_provider() -> RecordingProvider:
    return RecordingProvider("email-primary", Channel.EMAIL)


@pytest.fixture
def chains(
    sms_provider: RecordingProvider, email_provider: RecordingProvider
) -> dict[Channel, ProviderChain]:
    return {
        Channel.SMS: ProviderChain(Channel.SMS, [sms_provider]),
        Channel.EMAIL: ProviderChain(Channel.EMAIL, [email_provider]),
    }


@pytest.fixture
def delivery(
    records: InMemoryRecordStore,
    repository: InMemoryWorkflowRepository,
    chains: dict[Channel, ProviderChain],
) -> MessageDeliveryService:
    return MessageDeliveryService(
        records, repository, chains, {"business_name": "Glow Clinic"}
    )


@pytest.fixture
async def engine(
    records: InMemoryRecordStore,
    repository: InMemoryWorkflowRepository,
    chains: dict[Channel, ProviderChain],
    clock: FakeClock,
) -> AsyncGenerator[AutomationEngine, None]:
    eng = AutomationEngine(records, repository, chains, clock=clock)
    yield eng
    await eng.close()
