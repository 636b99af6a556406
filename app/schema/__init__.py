"""Schema package exports."""

from .enhancements import CreditAccount, CreditTransaction, EnhancementJob, EnhancementVariant, OutboxEvent, WebhookNonce

__all__ = ["CreditAccount", "CreditTransaction", "EnhancementJob", "EnhancementVariant", "OutboxEvent", "WebhookNonce"]
