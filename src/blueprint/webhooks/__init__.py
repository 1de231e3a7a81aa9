"""Lifestyle Blueprint - AI backend webhooks (tool calls and run completion)."""

from blueprint.webhooks.handler import AssistantClient, WebhookHandler, verify_signature
from blueprint.webhooks.tools import STAGE_TAGS, TOOL_HANDLERS, StageToolHandler, resolve_stage

__all__ = [
    "AssistantClient",
    "STAGE_TAGS",
    "StageToolHandler",
    "TOOL_HANDLERS",
    "WebhookHandler",
    "resolve_stage",
    "verify_signature",
]
