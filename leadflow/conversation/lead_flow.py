"""
Lead capture and qualification sub-flows.

Contact capture follows a fixed sequence ASK_EMAIL -> [ASK_NAME] ->
[ASK_REASON] -> COMPLETED; the optional steps are skipped per config.
Every step validates before advancing, and invalid input re-prompts
without advancing. Re-prompts are bounded: after ``max_retries`` failed
attempts an optional step is skipped and the email step gives up and
hands the visitor back to normal conversation.

All functions here are pure: they read session sub-state and return what
the next sub-state should be.

Usage:
    result = process_capture_step(LeadCaptureStep.ASK_EMAIL, "jane@acme.com", config)
    assert result.next_step == LeadCaptureStep.ASK_NAME
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional

from leadflow import prompts
from leadflow.errors import ValidationError
from leadflow.schemas.session_schema import (
    ConversationMode,
    LeadCaptureConfig,
    LeadCaptureStep,
    LeadData,
    QualificationQuestion,
)

logger = logging.getLogger(__name__)

# Validation thresholds
MIN_NAME_LENGTH = 2
MAX_NAME_LENGTH = 50
MIN_REASON_LENGTH = 2
DEFAULT_MAX_RETRIES = 3

EMAIL_RE = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")

_NAME_WORD = r"[A-Za-z][A-Za-z'\-]*"
_NAME_PATTERNS = [
    re.compile(rf"\bmy\s+name\s+is\s+({_NAME_WORD}(?:\s+{_NAME_WORD})?)", re.IGNORECASE),
    re.compile(rf"\b(?:i'm|i\s+am)\s+({_NAME_WORD}(?:\s+{_NAME_WORD})?)", re.IGNORECASE),
    re.compile(r"\b([A-Z][a-z'\-]+\s+[A-Z][a-z'\-]+)\b"),
]
_DIGIT_RE = re.compile(r"\d")
_FILLER_WORDS = {"interested", "looking", "just", "not", "here", "good", "fine", "ready", "sure"}

_REPROMPTS = {
    LeadCaptureStep.ASK_EMAIL: prompts.INVALID_EMAIL_REPROMPT,
    LeadCaptureStep.ASK_NAME: prompts.INVALID_NAME_REPROMPT,
    LeadCaptureStep.ASK_REASON: prompts.INVALID_REASON_REPROMPT,
}

_STEP_PROMPTS = {
    LeadCaptureStep.ASK_EMAIL: prompts.ASK_EMAIL_PROMPT,
    LeadCaptureStep.ASK_NAME: prompts.ASK_NAME_PROMPT,
    LeadCaptureStep.ASK_REASON: prompts.ASK_REASON_PROMPT,
}


def extract_email(message: str) -> Optional[str]:
    """Return the first email address in the message, lower-cased."""
    match = EMAIL_RE.search(message)
    return match.group(0).lower() if match else None


def is_valid_name(value: str) -> bool:
    value = value.strip()
    return (
        MIN_NAME_LENGTH <= len(value) <= MAX_NAME_LENGTH
        and not _DIGIT_RE.search(value)
        and "@" not in value
    )


def extract_name(message: str) -> Optional[str]:
    """
    Best-effort name extraction.

    Tries "my name is X", "I'm X" and a bare capitalized two-word token,
    then falls back to the whole reply when it is short enough to be a name.
    Approximate by nature: names outside these shapes are missed.
    """
    for pattern in _NAME_PATTERNS:
        match = pattern.search(message)
        if not match:
            continue
        candidate = match.group(1).strip()
        words = candidate.split()
        while words and words[-1].lower() in _FILLER_WORDS:
            words.pop()
        if words and words[0].lower() in _FILLER_WORDS:
            continue
        candidate = " ".join(words)
        if candidate and is_valid_name(candidate):
            return candidate

    bare = message.strip().strip(".!")
    if len(bare.split()) <= 3 and is_valid_name(bare):
        return bare
    return None


def first_capture_step() -> LeadCaptureStep:
    return LeadCaptureStep.ASK_EMAIL


def next_capture_step(current: LeadCaptureStep, config: LeadCaptureConfig) -> LeadCaptureStep:
    """The step after ``current``, skipping name/reason when not required."""
    if current == LeadCaptureStep.ASK_EMAIL and config.require_name:
        return LeadCaptureStep.ASK_NAME
    if current in (LeadCaptureStep.ASK_EMAIL, LeadCaptureStep.ASK_NAME) and config.require_reason:
        return LeadCaptureStep.ASK_REASON
    return LeadCaptureStep.COMPLETED


def prompt_for_step(step: LeadCaptureStep) -> str:
    return _STEP_PROMPTS.get(step, "")


@dataclass
class CaptureStepResult:
    """Outcome of one visitor reply during contact capture."""

    success: bool
    next_step: Optional[LeadCaptureStep]
    response: str
    lead_data: Optional[LeadData] = None
    validation_error: Optional[str] = None
    attempts: int = 0
    abandoned: bool = False

    @property
    def completed(self) -> bool:
        return self.next_step == LeadCaptureStep.COMPLETED


def _validate_step(step: LeadCaptureStep, message: str) -> LeadData:
    """Extract the field for ``step`` or raise ValidationError."""
    if step == LeadCaptureStep.ASK_EMAIL:
        email = extract_email(message)
        if not email:
            raise ValidationError("No valid email address found")
        return LeadData(email=email)

    if step == LeadCaptureStep.ASK_NAME:
        name = extract_name(message)
        if not name:
            raise ValidationError("Name must be 2-50 characters with no digits")
        return LeadData(name=name)

    if step == LeadCaptureStep.ASK_REASON:
        reason = message.strip()
        if len(reason) < MIN_REASON_LENGTH:
            raise ValidationError("Reason is empty")
        return LeadData(reason_for_interest=reason)

    raise ValueError(f"No input expected at step {step.value}")


def process_capture_step(
    step: Optional[LeadCaptureStep],
    message: str,
    config: LeadCaptureConfig,
    attempts: int = 0,
    max_retries: int = DEFAULT_MAX_RETRIES,
) -> CaptureStepResult:
    """
    Validate the reply for the current step and decide the next one.

    ``attempts`` is the number of failed attempts already made on ``step``.
    The returned ``response`` is the prompt for the next step; it is empty
    when capture is completed so the caller can route onward.
    """
    current = step or first_capture_step()
    if current == LeadCaptureStep.COMPLETED:
        return CaptureStepResult(success=True, next_step=LeadCaptureStep.COMPLETED, response="")

    try:
        data = _validate_step(current, message)
    except ValidationError as exc:
        failed = attempts + 1
        logger.debug("Capture step %s rejected (%d/%d): %s", current.value, failed, max_retries, exc)

        if failed < max_retries:
            return CaptureStepResult(
                success=False,
                next_step=current,
                response=_REPROMPTS[current],
                validation_error=str(exc),
                attempts=failed,
            )

        if current == LeadCaptureStep.ASK_EMAIL:
            logger.info("Email capture abandoned after %d attempts", failed)
            return CaptureStepResult(
                success=False,
                next_step=None,
                response=prompts.CAPTURE_ABANDONED,
                validation_error=str(exc),
                attempts=0,
                abandoned=True,
            )

        skipped_to = next_capture_step(current, config)
        logger.info("Optional capture step %s skipped after %d attempts", current.value, failed)
        return CaptureStepResult(
            success=False,
            next_step=skipped_to,
            response=prompt_for_step(skipped_to),
            validation_error=str(exc),
        )

    next_step = next_capture_step(current, config)
    return CaptureStepResult(
        success=True,
        next_step=next_step,
        response=prompt_for_step(next_step),
        lead_data=data,
    )


@dataclass
class StageRoute:
    """Where the conversation goes once a sub-flow finishes."""

    mode: ConversationMode
    response: str
    offer_booking: bool = False
    question: Optional[QualificationQuestion] = None


def _booking_or_closure(config: LeadCaptureConfig, thanks: str) -> StageRoute:
    if config.can_offer_booking:
        return StageRoute(
            mode=ConversationMode.BOOKING,
            response=f"{thanks} {prompts.BOOKING_OFFER}",
            offer_booking=True,
        )
    return StageRoute(
        mode=ConversationMode.CLOSURE,
        response=config.closure_message or prompts.CLOSURE_DEFAULT,
    )


def complete_capture(config: LeadCaptureConfig) -> StageRoute:
    """Qualification if questions are configured, else booking, else closure."""
    questions = config.active_questions
    if questions:
        first = questions[0]
        return StageRoute(
            mode=ConversationMode.QUALIFICATION,
            response=f"{prompts.QUALIFICATION_INTRO}\n\n{first.question}",
            question=first,
        )
    return _booking_or_closure(config, "Thank you!")


def route_after_qualification(config: LeadCaptureConfig) -> StageRoute:
    return _booking_or_closure(config, "Thank you for sharing that!")


@dataclass
class QualificationStepResult:
    next_step: int
    response: str
    question_id: Optional[str] = None
    answer: Optional[str] = None
    next_question: Optional[QualificationQuestion] = None
    route: Optional[StageRoute] = None

    @property
    def done(self) -> bool:
        return self.route is not None


def process_qualification_step(
    step: int, message: str, config: LeadCaptureConfig
) -> QualificationStepResult:
    """
    Record the reply against the question asked last turn (index ``step``)
    and emit the next question, or route onward when the list is exhausted.

    A required question with a blank reply is asked again.
    """
    questions = config.active_questions
    if step >= len(questions):
        route = route_after_qualification(config)
        return QualificationStepResult(next_step=step, response=route.response, route=route)

    current = questions[step]
    answer = message.strip()
    if current.required and not answer:
        return QualificationStepResult(next_step=step, response=current.question, next_question=current)

    next_step = step + 1
    if next_step < len(questions):
        upcoming = questions[next_step]
        return QualificationStepResult(
            next_step=next_step,
            response=upcoming.question,
            question_id=current.id,
            answer=answer,
            next_question=upcoming,
        )

    route = route_after_qualification(config)
    return QualificationStepResult(
        next_step=next_step,
        response=route.response,
        question_id=current.id,
        answer=answer,
        route=route,
    )
