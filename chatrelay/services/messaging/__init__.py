from chatrelay.services.messaging.base import MessagingProvider, SendResult
from chatrelay.services.messaging.twilio_provider import TwilioProvider

__all__ = ["MessagingProvider", "SendResult", "TwilioProvider"]
