"""Outbound SMS and email delivery with provider fallback."""
from careflow.messaging.providers import (
    MailchimpTransactionalProvider,
    MessageProvider,
    ProviderChain,
    ResendEmailProvider,
    SendGridEmailProvider,
    TwilioSMSProvider,
    build_provider_chains,
)
from careflow.messaging.service import MessageDeliveryService

__all__ = [
    "MessageProvider",
    "TwilioSMSProvider",
    "SendGridEmailProvider",
    "ResendEmailProvider",
    "MailchimpTransactionalProvider",
    "ProviderChain",
    "build_provider_chains",
    "MessageDeliveryService",
]
