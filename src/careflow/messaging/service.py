"""Message delivery: template lookup, preference checks, rendering, fallback."""
from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from typing import Any

import structlog

from careflow.core.constants import Channel, DeliveryStatus
from careflow.core.exceptions import (
    ChannelMismatchError,
    ClientNotFoundError,
    TemplateNotFoundError,
)
from careflow.core.types import Client, DeliveryRecord, MessageTemplate
from careflow.messaging.providers import ProviderChain
from careflow.store.base import RecordStore, WorkflowRepository
from careflow.templates.renderer import TemplateRenderer
from careflow.templates.variables import build_merge_variables

logger = structlog.get_logger(__name__)


class MessageDeliveryService:
    """Sends one templated message to one client and records the outcome.

    Every call that gets past template and client lookup persists exactly one
    :class:`DeliveryRecord`, whatever the outcome. Provider failures are
    recovered here by falling through the channel's chain; they never reach
    the caller as exceptions.

    Args:
        records: CRM record store (clients and templates).
        repository: Where delivery records are persisted.
        chains: Provider chain per channel.
        default_variables: Org-level merge variables (``business_name``, ...).
    """

    def __init__(
        self,
        records: RecordStore,
        repository: WorkflowRepository,
        chains: Mapping[Channel, ProviderChain],
        default_variables: Mapping[str, Any] | None = None,
    ) -> None:
        self._records = records
        self._repository = repository
        self._chains = dict(chains)
        self._defaults = dict(default_variables or {})

    async def send(
        self,
        org_id: str,
        client_id: str,
        template_id: str,
        variables: Mapping[str, Any] | None = None,
        channel_hint: Channel | str | None = None,
        *,
        scheduled_for: datetime | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> DeliveryRecord:
        """Deliver a template to a client through the first provider that succeeds.

        Raises:
            TemplateNotFoundError: Unknown or inactive template.
            ClientNotFoundError: Unknown client.
            ChannelMismatchError: *channel_hint* disagrees with the template.
        """
        template = await self._records.get_template(org_id, template_id)
        if template is None or not template.is_active:
            raise TemplateNotFoundError(
                f"Template {template_id} not found or inactive",
                code="TEMPLATE_NOT_FOUND",
                details={"org_id": org_id, "template_id": template_id},
            )
        channel = template.channel
        if channel_hint is not None and Channel(channel_hint) != channel:
            raise ChannelMismatchError(
                f"Template {template_id} is a {channel} template, not {channel_hint}",
                code="CHANNEL_MISMATCH",
            )

        client = await self._records.get_client(org_id, client_id)
        if client is None:
            raise ClientNotFoundError(
                f"Client {client_id} not found in org {org_id}",
                code="CLIENT_NOT_FOUND",
            )

        log = logger.bind(org_id=org_id, client_id=client_id, template_id=template_id, channel=channel)
        base = DeliveryRecord(
            org_id=org_id,
            template_id=template_id,
            client_id=client_id,
            channel=channel,
            status=DeliveryStatus.FAILED,
            scheduled_for=scheduled_for,
            metadata=dict(metadata or {}),
        )

        if client.preferences.has_opted_out(channel):
            log.info("delivery_opted_out")
            return await self._record(base.model_copy(update={"status": DeliveryStatus.OPTED_OUT}))

        recipient = client.recipient_for(channel)
        if not recipient:
            log.info("delivery_no_recipient")
            return await self._record(
                base.model_copy(update={"status": DeliveryStatus.NO_RECIPIENT})
            )

        body, meta = self._render(template, client, variables)
        base = base.model_copy(update={"recipient": recipient})

        attempts: list[str] = []
        chain = self._chains.get(channel)
        for provider in chain.providers if chain is not None else []:
            if not provider.is_available():
                attempts.append(f"{provider.name}: unavailable")
                continue
            try:
                result = await provider.send_message(body, recipient, meta)
            except Exception as exc:  # noqa: BLE001
                attempts.append(f"{provider.name}: {exc}")
                log.warning("provider_failed", provider=provider.name, error=str(exc))
                continue
            if not result.success:
                attempts.append(f"{provider.name}: {result.error or 'rejected'}")
                log.warning("provider_failed", provider=provider.name, error=result.error)
                continue

            log.info("delivery_sent", provider=provider.name, external_id=result.external_id)
            return await self._record(
                base.model_copy(
                    update={
                        "status": DeliveryStatus.SENT,
                        "provider": provider.name,
                        "external_id": result.external_id,
                    }
                )
            )

        error = "; ".join(attempts) if attempts else f"No providers configured for {channel}"
        log.error("delivery_exhausted", attempts=len(attempts), error=error)
        return await self._record(base.model_copy(update={"error": error}))

    def _render(
        self,
        template: MessageTemplate,
        client: Client,
        variables: Mapping[str, Any] | None,
    ) -> tuple[str, dict[str, Any]]:
        merged = build_merge_variables(client=client, defaults=self._defaults, overrides=variables)
        body = TemplateRenderer(template.body).render(merged)
        meta: dict[str, Any] = {"template_id": template.id}
        if template.subject:
            meta["subject"] = TemplateRenderer(template.subject).render(merged)
        return body, meta

    async def _record(self, record: DeliveryRecord) -> DeliveryRecord:
        await self._repository.add_delivery(record)
        return record
