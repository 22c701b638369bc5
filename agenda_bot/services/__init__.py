from agenda_bot.services.conversation_service import (
    get_conversation,
    is_stale,
    save_conversation,
)
from agenda_bot.services.dialogue_service import (
    DialogueContext,
    DialogueEngine,
    DialogueOutcome,
)
from agenda_bot.services.state_machine import (
    BookingState,
    InvalidTransitionError,
    can_transition,
    dump_dialogue,
    load_dialogue,
    transition,
)
