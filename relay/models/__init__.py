from relay.models.ai_usage import AIUsage
from relay.models.booking import Booking
from relay.models.contact import Contact
from relay.models.conversation import Conversation
from relay.models.message import Message
from relay.models.notification import Notification
from relay.models.tenant import FAQ, Tenant
from relay.models.user import AGENT_ROLES, User

__all__ = [
    "Tenant",
    "FAQ",
    "User",
    "AGENT_ROLES",
    "Conversation",
    "Message",
    "Booking",
    "Contact",
    "Notification",
    "AIUsage",
]
