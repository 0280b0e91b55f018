"""
Integrations Package

Third-party webhooks, lead intake and outbound messaging.
"""

from .auto_contact import AutoContactSender, AutoContactService, AutoContactSettings, run_auto_contact_flow
from .facebook import FacebookLeadsWebhook, IntegrationConfigError
from .leads import LeadIntakeService, LeadValidationError
from .whatsapp import WhatsAppWebhookProcessor, normalize_message

__all__ = [
    "WhatsAppWebhookProcessor",
    "normalize_message",
    "FacebookLeadsWebhook",
    "IntegrationConfigError",
    "LeadIntakeService",
    "LeadValidationError",
    "AutoContactSettings",
    "AutoContactSender",
    "AutoContactService",
    "run_auto_contact_flow",
]
