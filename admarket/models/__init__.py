from admarket.models.user import User
from admarket.models.channel import Channel
from admarket.models.deal import Deal
from admarket.models.creative import Creative
from admarket.models.deal_event import DealEvent
from admarket.models.deal_chat import DealChat
from admarket.models.notification import Notification

__all__ = [
    "User",
    "Channel",
    "Deal",
    "Creative",
    "DealEvent",
    "DealChat",
    "Notification",
]
