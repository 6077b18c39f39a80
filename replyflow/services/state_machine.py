from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Optional


class ConversationState(str, Enum):
    NORMAL = "normal"
    ESCALATED = "escalated"
    AUTO_PINNED = "auto_pinned"
    MANUAL = "manual"


VALID_TRANSITIONS = {
    ConversationState.NORMAL: [ConversationState.ESCALATED, ConversationState.AUTO_PINNED, ConversationState.MANUAL],
    ConversationState.ESCALATED: [ConversationState.NORMAL, ConversationState.MANUAL],
    ConversationState.AUTO_PINNED: [ConversationState.NORMAL, ConversationState.ESCALATED, ConversationState.MANUAL],
    ConversationState.MANUAL: [ConversationState.NORMAL],
}


class InvalidTransitionError(Exception):
    def __init__(self, from_state: ConversationState, to_state: ConversationState):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition: {from_state.value} -> {to_state.value}")


@dataclass(frozen=True)
class ControlState:
    """The control fields of a conversation. Only the functions below produce new values."""

    state: ConversationState = ConversationState.NORMAL
    bot_enabled: bool = True
    pinned: bool = False
    pinned_reason: Optional[str] = None
    pinned_at: Optional[int] = None

    @classmethod
    def from_conversation(cls, conversation) -> "ControlState":
        try:
            state = ConversationState(conversation.state)
        except ValueError:
            state = ConversationState.NORMAL if conversation.bot_enabled else ConversationState.MANUAL
        return cls(
            state=state,
            bot_enabled=conversation.bot_enabled,
            pinned=conversation.pinned,
            pinned_reason=conversation.pinned_reason,
            pinned_at=conversation.pinned_at,
        )

    def as_fields(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "bot_enabled": self.bot_enabled,
            "pinned": self.pinned,
            "pinned_reason": self.pinned_reason,
            "pinned_at": self.pinned_at,
        }


def can_transition(from_state: ConversationState, to_state: ConversationState) -> bool:
    """Check if transition is valid."""
    if from_state == to_state:
        return False
    allowed = VALID_TRANSITIONS.get(from_state, [])
    return to_state in allowed


def transition(from_state: ConversationState, to_state: ConversationState) -> ConversationState:
    """Perform state transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(from_state, to_state)
    return to_state


def pin(control: ControlState, reason: Optional[str], now: int) -> ControlState:
    """Pin, or update the reason of an existing pin. The original pin time is kept."""
    pinned_at = control.pinned_at if control.pinned and control.pinned_at else now
    return replace(control, pinned=True, pinned_reason=reason, pinned_at=pinned_at)


def unpin(control: ControlState) -> ControlState:
    return replace(control, pinned=False, pinned_reason=None, pinned_at=None)


def escalate(control: ControlState, reason: str, now: int) -> ControlState:
    """Customer asked for a human: suppress the bot and pin for attention."""
    state = transition(control.state, ConversationState.ESCALATED)
    return replace(pin(control, reason, now), state=state, bot_enabled=False)


def auto_pin(control: ControlState, reason: str, now: int) -> ControlState:
    """Returning customer with an unrecognized topic: pin without notifying anyone."""
    state = transition(control.state, ConversationState.AUTO_PINNED)
    return replace(pin(control, reason, now), state=state, bot_enabled=False)


def cancel_escalation(control: ControlState) -> ControlState:
    """Customer withdrew the handoff request: back to the bot, unpinned."""
    if control.bot_enabled:
        raise InvalidTransitionError(control.state, ConversationState.NORMAL)
    state = transition(control.state, ConversationState.NORMAL)
    return replace(unpin(control), state=state, bot_enabled=True)


def admin_takeover(control: ControlState) -> ControlState:
    """An admin spoke in the conversation. Idempotent; pinning is left as is."""
    if control.state == ConversationState.MANUAL and not control.bot_enabled:
        return control
    if control.state != ConversationState.MANUAL:
        transition(control.state, ConversationState.MANUAL)
    return replace(control, state=ConversationState.MANUAL, bot_enabled=False)


def enable_bot(control: ControlState) -> ControlState:
    if control.state == ConversationState.NORMAL:
        return replace(control, bot_enabled=True)
    state = transition(control.state, ConversationState.NORMAL)
    return replace(control, state=state, bot_enabled=True)


def disable_bot(control: ControlState) -> ControlState:
    return admin_takeover(control)
