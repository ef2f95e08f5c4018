"""
Offline console demo: chat with the lead capture widget core in a terminal.

Runs the real state machine, session store, lead store and rollout
machinery against the built-in FAQ catalog. No LLM and no network calls.

Usage:
    python console_demo.py
    python console_demo.py --scenario lead
    python console_demo.py --scenario shadow
"""

import argparse
import asyncio
import dataclasses
from typing import Optional
from uuid import uuid4

from leadflow.config import AppConfig, load_config
from leadflow.orchestrator import TurnHandler, build_turn_handler
from leadflow.schemas.action_schema import ClientActionType
from leadflow.schemas.rollout_schema import Cohort
from leadflow.schemas.session_schema import LeadCaptureConfig, QualificationQuestion
from leadflow.schemas.turn_schema import TurnRequest, TurnResponse

BLUE = "\033[94m"
GREEN = "\033[92m"
YELLOW = "\033[93m"
RED = "\033[91m"
DIM = "\033[2m"
RESET = "\033[0m"
BOLD = "\033[1m"

DEMO_CHATBOT_ID = "demo-bot"
DEMO_PAGE_URL = "https://example.com/pricing"

DEMO_LEAD_CONFIG = LeadCaptureConfig(
    lead_capture_trigger="MEDIUM_INTENT",
    require_name=True,
    booking_enabled=True,
    booking_link="https://calendly.com/acme/30min",
    booking_cta_text="Book a 30-minute call",
)

QUALIFYING_LEAD_CONFIG = DEMO_LEAD_CONFIG.model_copy(update={
    "qualification_enabled": True,
    "qualification_questions": [
        QualificationQuestion(id="team_size", question="How large is your team?", required=True),
        QualificationQuestion(id="timeline", question="When are you hoping to get started?"),
    ],
})


class ChatConsole:
    """Plays visitor messages through a TurnHandler and prints each turn."""

    def __init__(
        self,
        handler: TurnHandler,
        lead_config: LeadCaptureConfig = DEMO_LEAD_CONFIG,
        chatbot_id: str = DEMO_CHATBOT_ID,
    ) -> None:
        self.handler = handler
        self.lead_config = lead_config
        self.chatbot_id = chatbot_id
        self.session_id = f"visitor-{uuid4().hex[:8]}"

    def assistant_say(self, text: str) -> None:
        print(f"{GREEN}{BOLD}[Assistant]{RESET} {GREEN}{text}{RESET}")

    def system_log(self, text: str) -> None:
        print(f"{DIM}  >> {text}{RESET}")

    # Pre-scripted scenarios for --scenario flag
    SCENARIOS: dict[str, list[str]] = {
        "lead": [
            "Hi! What integrations do you support?",
            "How much does the pro plan cost?",
            "Yes, please connect me with the team",
            "sure, it's jane@acme.com",
            "Jane Doe",
            "yes, let's book it",
        ],
        "qualification": [
            "What features do you have?",
            "I'd like a demo, what's the pricing?",
            "yes please",
            "jane@acme.com",
            "my name is Jane Doe",
            "about 25 people",
            "next month",
            "no thanks",
        ],
        "info": [
            "Do you offer support on weekends?",
            "Is my data secure?",
            "Thanks, that's all",
        ],
        "retry": [
            "Tell me about pricing",
            "I want to book a demo",
            "not telling you",
            "still no",
            "nope",
            "What integrations do you have?",
        ],
    }

    async def send(self, message: str) -> TurnResponse:
        request = TurnRequest(
            chatbot_id=self.chatbot_id,
            session_id=self.session_id,
            message=message,
            page_url=DEMO_PAGE_URL,
        )
        reply = await self.handler.handle_turn(request, self.lead_config)
        self.assistant_say(reply.response)
        self._log_turn(reply)
        return reply

    def _log_turn(self, reply: TurnResponse) -> None:
        self.system_log(
            f"mode={reply.mode.value} intent={reply.intent_level.value} "
            f"path={reply.execution_mode.value}"
        )
        action = reply.client_action
        if action.type == ClientActionType.SHOW_BOOKING_LINK:
            self.system_log(f"widget: {action.cta_text} -> {action.url}")
        elif action.type == ClientActionType.SHOW_QUALIFICATION and action.question:
            self.system_log(f"widget: question '{action.question.id}'")
        elif action.type != ClientActionType.NONE:
            self.system_log(f"widget: {action.type.value}")

    async def run_scenario(self, scenario: str) -> None:
        """Auto-play a pre-scripted scenario for demo purposes."""
        steps = self.SCENARIOS.get(scenario)
        if not steps:
            print(f"{RED}Unknown scenario: {scenario}{RESET}")
            return

        self._banner(f"LEADFLOW - Scenario: {scenario}")
        for step in steps:
            print(f"\n{BLUE}[Visitor] {RESET}{step}")
            await self.send(step)
        await self.handler.close()
        await self._summary()

    async def run(self) -> None:
        self._banner("LEADFLOW - Console Demo", "Type 'quit' to exit")
        while True:
            user_input = (await asyncio.to_thread(input, f"\n{BLUE}[Visitor] {RESET}")).strip()
            if not user_input:
                continue
            if user_input.lower() in ("quit", "exit", "q"):
                print(f"\n{DIM}Session ended.{RESET}")
                break
            await self.send(user_input)
        await self.handler.close()
        await self._summary()

    def _banner(self, title: str, subtitle: Optional[str] = None) -> None:
        print()
        print(f"{BOLD}{'=' * 60}{RESET}")
        print(f"{BOLD}  {title}{RESET}")
        print(f"{BOLD}  Chatbot: {self.chatbot_id}  Visitor: {self.session_id}{RESET}")
        if subtitle:
            print(f"{BOLD}  {subtitle}{RESET}")
        print(f"{BOLD}{'=' * 60}{RESET}")

    async def _summary(self) -> None:
        print(f"\n{BOLD}{'=' * 60}{RESET}")
        session = await self.handler.store.get_session(self.chatbot_id, self.session_id)
        if session is not None:
            print(f"{DIM}  Final mode: {session.mode.value}, messages: {session.message_count}{RESET}")
            if session.lead_id:
                lead = await self.handler.leads.get_lead(session.lead_id)
                print(f"{YELLOW}  Lead: {lead.name or '-'} <{lead.email}> ({lead.booking_status.value}){RESET}")
                print(f"{DIM}  Summary: {lead.conversation_summary}{RESET}")
            if session.qualification_answers:
                print(f"{DIM}  Qualification: {session.qualification_answers}{RESET}")

        deliveries = self.handler.dispatcher.deliveries
        if deliveries:
            sent = ", ".join(d.event.value for d in deliveries if d.success)
            print(f"{DIM}  Notifications: {sent}{RESET}")

        stats = self.handler.comparator.get_comparison_stats(self.chatbot_id)
        if stats.total_comparisons:
            print(
                f"{DIM}  Shadow: {stats.total_comparisons} comparison(s), "
                f"mode match {stats.mode_match_rate:.0f}%, "
                f"avg alignment {stats.avg_alignment_score:.0f}{RESET}"
            )
        print(f"{BOLD}{'=' * 60}{RESET}")


def _demo_config(path: str) -> AppConfig:
    config = load_config()
    if path == "shadow":
        rollout = dataclasses.replace(config.rollout, shadow_mode_enabled=True)
    elif path == "agent":
        rollout = dataclasses.replace(config.rollout, use_agent=True, agent_rollout_percentage=100)
    else:
        rollout = dataclasses.replace(config.rollout, use_agent=False, shadow_mode_enabled=False)
    return dataclasses.replace(config, rollout=rollout)


async def _amain(args: argparse.Namespace) -> None:
    handler = build_turn_handler(_demo_config(args.path))
    if args.path == "agent":
        await handler.cohorts.assign_cohort(DEMO_CHATBOT_ID, Cohort.AGENT)
    lead_config = QUALIFYING_LEAD_CONFIG if args.scenario == "qualification" else DEMO_LEAD_CONFIG
    console = ChatConsole(handler, lead_config)
    if args.scenario:
        await console.run_scenario(args.scenario)
    else:
        await console.run()


def main() -> None:
    parser = argparse.ArgumentParser(description="Offline console demo")
    parser.add_argument(
        "--scenario",
        choices=sorted(ChatConsole.SCENARIOS),
        default=None,
        help="Auto-play a pre-scripted scenario instead of interactive mode",
    )
    parser.add_argument(
        "--path",
        choices=["state_machine", "agent", "shadow"],
        default="state_machine",
        help="Decision path serving the visitor",
    )
    args = parser.parse_args()
    asyncio.run(_amain(args))


if __name__ == "__main__":
    main()
