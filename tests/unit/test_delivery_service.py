"""Tests for messaging/service.py."""
from __future__ import annotations

import pytest

from careflow.core.constants import Channel, DeliveryStatus
from careflow.core.exceptions import (
    ChannelMismatchError,
    ClientNotFoundError,
    ProviderError,
    TemplateNotFoundError,
)
from careflow.core.types import Client, CommunicationPreferences, MessageTemplate
from careflow.messaging.providers import ProviderChain
from careflow.messaging.service import MessageDeliveryService

ORG = "org-1"


def _service(records, repository, *providers) -> MessageDeliveryService:
    chains = {
        Channel.SMS: ProviderChain(Channel.SMS, [p for p in providers if p.channel == Channel.SMS]),
        Channel.EMAIL: ProviderChain(
            Channel.EMAIL, [p for p in providers if p.channel == Channel.EMAIL]
        ),
    }
    return MessageDeliveryService(records, repository, chains, {"business_name": "Glow Clinic"})


# ---------------------------------------------------------------------------
# Successful delivery
# ---------------------------------------------------------------------------


async def test_send_renders_and_records_sent(delivery, repository, sms_provider) -> None:
    record = await delivery.send(ORG, "client-1", "tpl-sms")

    assert record.status == DeliveryStatus.SENT
    assert record.provider == "sms-primary"
    assert record.external_id == "sms-primary-1"
    assert record.recipient == "+15550001111"
    assert sms_provider.sent[0]["body"] == "Hi Ana, thanks for visiting Glow Clinic!"
    assert await repository.list_deliveries(ORG) == [record]


async def test_email_subject_rendered_into_meta(delivery, email_provider) -> None:
    record = await delivery.send(
        ORG, "client-1", "tpl-email", {"appointment_type": "Filler", "review_link": "https://r"}
    )

    assert record.status == DeliveryStatus.SENT
    sent = email_provider.sent[0]
    assert sent["recipient"] == "ana@example.com"
    assert sent["meta"]["subject"] == "How was your Filler?"
    assert sent["meta"]["template_id"] == "tpl-email"
    assert sent["body"] == "Dear Ana Silva, we hope you enjoyed it. https://r"


async def test_scheduled_for_and_metadata_carried(delivery, clock) -> None:
    record = await delivery.send(
        ORG, "client-1", "tpl-sms", scheduled_for=clock.now, metadata={"enrollment_id": "e1"}
    )
    assert record.scheduled_for == clock.now
    assert record.metadata == {"enrollment_id": "e1"}


# ---------------------------------------------------------------------------
# Fallback
# ---------------------------------------------------------------------------


async def test_fallback_records_second_provider(records, repository, make_provider) -> None:
    first = make_provider("a", Channel.SMS, priority=1, fail_with=ProviderError("a: HTTP 500"))
    second = make_provider("b", Channel.SMS, priority=2)
    service = _service(records, repository, second, first)

    record = await service.send(ORG, "client-1", "tpl-sms")

    assert record.status == DeliveryStatus.SENT
    assert record.provider == "b"
    assert len(second.sent) == 1
    assert len(await repository.list_deliveries(ORG)) == 1


async def test_rejected_result_falls_through(records, repository, make_provider) -> None:
    first = make_provider("a", Channel.SMS, priority=1, reject="invalid number")
    second = make_provider("b", Channel.SMS, priority=2)
    service = _service(records, repository, first, second)

    record = await service.send(ORG, "client-1", "tpl-sms")

    assert record.provider == "b"


async def test_unavailable_provider_skipped(records, repository, make_provider) -> None:
    first = make_provider("a", Channel.SMS, priority=1, available=False)
    second = make_provider("b", Channel.SMS, priority=2)
    service = _service(records, repository, first, second)

    record = await service.send(ORG, "client-1", "tpl-sms")

    assert record.provider == "b"
    assert first.sent == []


async def test_all_providers_failing_records_failed(records, repository, make_provider) -> None:
    first = make_provider("a", Channel.SMS, priority=1, fail_with=RuntimeError("boom"))
    second = make_provider("b", Channel.SMS, priority=2, available=False)
    service = _service(records, repository, first, second)

    record = await service.send(ORG, "client-1", "tpl-sms")

    assert record.status == DeliveryStatus.FAILED
    assert record.provider is None
    assert record.error == "a: boom; b: unavailable"
    assert len(await repository.list_deliveries(ORG)) == 1


async def test_empty_chain_records_failed(records, repository) -> None:
    service = _service(records, repository)

    record = await service.send(ORG, "client-1", "tpl-sms")

    assert record.status == DeliveryStatus.FAILED
    assert record.error == "No providers configured for sms"


# ---------------------------------------------------------------------------
# Preferences and recipients
# ---------------------------------------------------------------------------


async def test_opted_out_client_gets_opted_out_record(records, delivery, repository, sms_provider) -> None:
    records.add_client(
        Client(
            id="client-2",
            org_id=ORG,
            full_name="Bo Lee",
            phones=["+1555"],
            preferences=CommunicationPreferences(sms_opt_out=True),
        )
    )

    record = await delivery.send(ORG, "client-2", "tpl-sms")

    assert record.status == DeliveryStatus.OPTED_OUT
    assert sms_provider.sent == []
    assert len(await repository.list_deliveries(ORG, client_id="client-2")) == 1


async def test_missing_recipient(records, delivery, email_provider) -> None:
    records.add_client(Client(id="client-3", org_id=ORG, full_name="No Mail", phones=["+1"]))

    record = await delivery.send(ORG, "client-3", "tpl-email")

    assert record.status == DeliveryStatus.NO_RECIPIENT
    assert email_provider.sent == []


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


async def test_unknown_template_raises(delivery, repository) -> None:
    with pytest.raises(TemplateNotFoundError):
        await delivery.send(ORG, "client-1", "nope")
    assert await repository.list_deliveries(ORG) == []


async def test_inactive_template_raises(records, delivery) -> None:
    records.add_template(
        MessageTemplate(id="old", org_id=ORG, channel=Channel.SMS, body="x", is_active=False)
    )
    with pytest.raises(TemplateNotFoundError):
        await delivery.send(ORG, "client-1", "old")


async def test_template_scoped_by_org(delivery) -> None:
    with pytest.raises(TemplateNotFoundError):
        await delivery.send("org-2", "client-1", "tpl-sms")


async def test_unknown_client_raises(delivery, repository) -> None:
    with pytest.raises(ClientNotFoundError):
        await delivery.send(ORG, "ghost", "tpl-sms")
    assert await repository.list_deliveries(ORG) == []


async def test_channel_hint_mismatch_raises(delivery) -> None:
    with pytest.raises(ChannelMismatchError):
        await delivery.send(ORG, "client-1", "tpl-sms", channel_hint=Channel.EMAIL)


async def test_matching_channel_hint_accepted(delivery) -> None:
    record = await delivery.send(ORG, "client-1", "tpl-sms", channel_hint="sms")
    assert record.status == DeliveryStatus.SENT
