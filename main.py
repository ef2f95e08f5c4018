"""
leadflow entry point.

Runs the offline console chat, or reports which rollout cohort a chatbot
falls into under the current configuration.

Usage:
    Console chat:   python main.py console [--scenario lead] [--path shadow]
    Cohort lookup:  python main.py cohort bot-1 bot-2
"""

import asyncio
import sys

from leadflow.config import load_config
from leadflow.rollout.cohorts import CohortAssigner, InMemoryCohortRepository, hash_bucket


async def _print_cohorts(chatbot_ids: list[str]) -> None:
    config = load_config()
    assigner = CohortAssigner(InMemoryCohortRepository(), config.rollout)
    print(f"Agent rollout: {assigner.rollout_percentage}%")
    for chatbot_id in chatbot_ids:
        cohort = await assigner.get_cohort(chatbot_id)
        print(f"  {chatbot_id:<32} bucket={hash_bucket(chatbot_id):>2}  cohort={cohort.value}")


def _run_cohort_mode(chatbot_ids: list[str]) -> None:
    """Print bucket and cohort for each chatbot id."""
    if not chatbot_ids:
        print("Usage: python main.py cohort <chatbot-id> [<chatbot-id> ...]")
        sys.exit(2)
    asyncio.run(_print_cohorts(chatbot_ids))


def _run_console_mode(argv: list[str]) -> None:
    """Start the offline console demo (no API keys required)."""
    from console_demo import main as console_main

    sys.argv = [sys.argv[0], *argv]
    console_main()


if __name__ == "__main__":
    command = sys.argv[1] if len(sys.argv) > 1 else "console"
    if command == "cohort":
        _run_cohort_mode(sys.argv[2:])
    elif command == "console":
        _run_console_mode(sys.argv[2:])
    else:
        print(f"Unknown command: {command}. Expected 'console' or 'cohort'.")
        sys.exit(2)
