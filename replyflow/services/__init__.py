from replyflow.services.orchestrator import Orchestrator, TurnOutcome, TurnStatus
from replyflow.services.result import Result
from replyflow.services.state_machine import (
    ConversationState,
    ControlState,
    InvalidTransitionError,
    can_transition,
    transition,
)
