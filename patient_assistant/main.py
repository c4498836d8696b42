"""CLI entry point for the patient assistant.

A terminal chat for a single patient, useful in development without a web
client or a bearer token.  For production, use the FastAPI server
(``patient_assistant/server.py``).

Usage:
    python -m patient_assistant.main --patient-id <id>            # quiet
    python -m patient_assistant.main --patient-id <id> --debug    # show API calls
"""

from __future__ import annotations

import argparse
import logging

from dotenv import load_dotenv

from patient_assistant.agent import create_chat_pipeline
from patient_assistant.services.backend_client import BackendClient
from patient_assistant.services.conversation_store import ConversationStore

logger = logging.getLogger(__name__)


def _configure_logging(debug: bool = False) -> None:
    """Set up logging: WARNING by default, DEBUG when --debug is passed."""
    root_level = logging.DEBUG if debug else logging.WARNING
    logging.basicConfig(
        level=root_level,
        format="%(asctime)s %(levelname)-8s %(name)s - %(message)s",
    )

    if not debug:
        # Silence chatty HTTP loggers even if root is WARNING
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)
        logging.getLogger("chromadb").setLevel(logging.WARNING)

    logging.getLogger("patient_assistant").setLevel(logging.DEBUG if debug else logging.INFO)


def _print_turn(turn) -> None:
    print(f"\nAssistant: {turn.content}\n")
    if turn.action_result is not None and not turn.action_result.success:
        logger.info("Action %s failed: %s", turn.action, turn.action_result.error)


def main():
    """Run the interactive CLI chat loop."""
    parser = argparse.ArgumentParser(description="Patient Assistant CLI")
    parser.add_argument("--patient-id", required=True, help="Patient to chat as")
    parser.add_argument(
        "--debug", action="store_true",
        help="Show all log messages including HTTP requests",
    )
    args = parser.parse_args()

    load_dotenv()
    _configure_logging(debug=args.debug)

    print("\n" + "=" * 60)
    print("  Patient Assistant - CLI Chat")
    print("=" * 60)
    print("  Type your message and press Enter.")
    print("  Commands: 'quit' to exit, 'history' for recent turns, 'clear' to wipe history.")
    print("=" * 60 + "\n")

    store = ConversationStore()
    records = BackendClient()
    pipeline, projector, _ = create_chat_pipeline(store, records)
    logger.info("Chatting as patient %s", args.patient_id)

    try:
        while True:
            try:
                user_input = input("You: ").strip()
            except (KeyboardInterrupt, EOFError):
                print("\n\nGoodbye!")
                break

            if not user_input:
                continue

            command = user_input.lower()
            if command in ("exit", "quit", "q"):
                print("\nGoodbye! Take care.")
                break

            if command == "history":
                for turn in projector.project(args.patient_id, page=1, page_size=10):
                    speaker = "You" if turn.role == "user" else "Assistant"
                    print(f"  [{turn.timestamp:%Y-%m-%d %H:%M}] {speaker}: {turn.content}")
                print()
                continue

            if command == "clear":
                removed = store.clear(args.patient_id)
                if removed is None:
                    print("\n>> History store unavailable, nothing cleared.\n")
                else:
                    print(f"\n>> Cleared {removed} messages.\n")
                continue

            try:
                _print_turn(pipeline.run(args.patient_id, user_input))
            except KeyboardInterrupt:
                print("\n\nGoodbye!")
                break
    finally:
        records.close()


if __name__ == "__main__":
    main()
