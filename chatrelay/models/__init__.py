from chatrelay.models.contact import Contact
from chatrelay.models.conversation import Conversation

__all__ = [
    "Contact",
    "Conversation",
]
