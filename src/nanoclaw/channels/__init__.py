"""Chat transports. Each implements the ``nanoclaw.types.Channel`` protocol."""

from nanoclaw.channels.slack import SlackChannel
from nanoclaw.channels.whatsapp import WhatsAppChannel

__all__ = ["SlackChannel", "WhatsAppChannel"]
