from replyflow.schemas.conversation import Conversation, CRMProfile, FollowUp, Message, MessageRole
from replyflow.schemas.events import Channel, EventKind, InboundEvent
from replyflow.schemas.learned import LearnedData, LearnedItem, LearnedKind
from replyflow.schemas.resolver import ResolverResult
from replyflow.schemas.usage import TokenUsage

__all__ = [
    "Channel",
    "EventKind",
    "InboundEvent",
    "Conversation",
    "Message",
    "MessageRole",
    "FollowUp",
    "CRMProfile",
    "LearnedData",
    "LearnedItem",
    "LearnedKind",
    "ResolverResult",
    "TokenUsage",
]
