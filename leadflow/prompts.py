"""
Visitor-facing copy for every dialogue state, plus context builders.

Chatbot-specific closure and booking copy comes from the per-turn
LeadCaptureConfig; these are the defaults when the owner left it blank.
"""

from typing import Sequence

from leadflow.schemas.session_schema import SessionMessage

INTENT_CHECK_PROMPT = (
    "That's great that you're interested! Would you like me to help connect you "
    "with our team, or do you have more questions I can answer first?"
)
ASK_EMAIL_PROMPT = (
    "I'd be happy to help you further. To connect you with the right person, "
    "could you share your email address?"
)
ASK_NAME_PROMPT = "Thanks! And what name should we use when reaching out to you?"
ASK_REASON_PROMPT = "Perfect! One last thing - what are you primarily looking for help with?"
QUALIFICATION_INTRO = "Great! Just a couple quick questions to help us prepare for your conversation."
BOOKING_OFFER = "Would you like to schedule a quick call with our team to discuss this further?"
CLOSURE_DEFAULT = (
    "Thank you! Someone from our team will follow up shortly. "
    "Is there anything else I can help you with?"
)
BOOKING_ACCEPTED_DEFAULT = (
    "Great! A new tab has been opened for you to schedule your call. "
    "We look forward to speaking with you!"
)
CLOSURE_ACK = "You're welcome! Feel free to reach out anytime you have questions."
BACK_TO_INFO = "No problem! What else would you like to know?"
CAPTURE_ABANDONED = "No worries, we can skip that for now. What else would you like to know?"

INVALID_EMAIL_REPROMPT = (
    "I didn't quite catch that. Could you please share your email address "
    "so we can follow up with you?"
)
INVALID_NAME_REPROMPT = "I didn't catch your name. What name should we use?"
INVALID_REASON_REPROMPT = "Could you tell me a little about what you're looking for?"

RETRIEVAL_APOLOGY = (
    "Sorry, I'm having trouble looking that up right now. "
    "Could you try asking again in a moment?"
)

NEXT_STEP_INSTRUCTION = (
    "After answering, offer a clear next step when appropriate "
    '(e.g., "Would you like more details or to schedule a call?").'
)


def build_conversation_context(history: Sequence[SessionMessage], window: int = 5) -> str:
    """Render the last ``window`` history entries as a context preamble."""
    if not history:
        return ""
    lines = [
        f"{'User' if msg.role == 'user' else 'Assistant'}: {msg.content}"
        for msg in list(history)[-window:]
    ]
    return "Previous conversation:\n" + "\n".join(lines) + "\n\nCurrent message: "


def build_answer_instructions(system_instructions: str) -> str:
    if not system_instructions:
        return NEXT_STEP_INSTRUCTION
    return f"{system_instructions}\n\n{NEXT_STEP_INSTRUCTION}"


def with_prompt(answer: str, prompt: str) -> str:
    """Append a follow-up prompt to an answer, separated by a blank line."""
    if not answer:
        return prompt
    return f"{answer}\n\n{prompt}"
