"""CLI entry point for the Luxe Dental assistant.

A terminal chat against a seeded in-memory clinic, for development.  The LLM
calls are real (``DEEPSEEK_API_KEY`` must be set); nothing is persisted.
For production, use the FastAPI server (dental_agent/server.py).

Usage:
    python -m dental_agent.main            # normal mode (quiet)
    python -m dental_agent.main --debug    # debug mode (shows API calls)
"""

from __future__ import annotations

import argparse
import logging
import random

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


def _configure_logging(debug: bool = False) -> None:
    """Set up logging: WARNING by default, DEBUG when --debug is passed."""
    root_level = logging.DEBUG if debug else logging.WARNING
    logging.basicConfig(
        level=root_level,
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    )

    if not debug:
        # Silence chatty HTTP loggers even if root is WARNING
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)

    logging.getLogger("dental_agent").setLevel(logging.DEBUG if debug else logging.INFO)


def _random_phone() -> str:
    return "+57300" + "".join(random.choices("0123456789", k=7))


def main():
    """Run the interactive CLI chat loop."""
    parser = argparse.ArgumentParser(description="Luxe Dental assistant CLI")
    parser.add_argument(
        "--debug", action="store_true",
        help="Show all log messages including HTTP requests",
    )
    parser.add_argument("--phone", help="Chat as this phone number (default: random)")
    parser.add_argument("--name", help="WhatsApp profile name for a new contact")
    args = parser.parse_args()

    load_dotenv()
    _configure_logging(debug=args.debug)

    # Imported after logging is configured: config reads the environment on import.
    from dental_agent.agent import ClinicAgent  # noqa: PLC0415
    from dental_agent.compactor import ContextCompactor  # noqa: PLC0415
    from dental_agent.config import ASSISTANT_NAME, DEFAULT_TENANT_ID  # noqa: PLC0415
    from dental_agent.services.conversation import ConversationService  # noqa: PLC0415
    from dental_agent.services.llm_client import get_llm_client  # noqa: PLC0415
    from dental_agent.services.store import create_store  # noqa: PLC0415

    store = create_store("memory", DEFAULT_TENANT_ID)
    gateway = get_llm_client()
    agent = ClinicAgent(gateway, store)
    service = ConversationService(store, agent)
    compactor = ContextCompactor(store, gateway)

    print("\n" + "=" * 60)
    print("  Luxe Dental - CLI Chat")
    print("=" * 60)
    print("  Type your message and press Enter.")
    print("  Commands: 'quit' to exit, 'new' to chat as a new contact.")
    print("=" * 60 + "\n")

    phone = args.phone or _random_phone()
    logger.info("Chatting as %s", phone)

    while True:
        try:
            user_input = input("Tú: ").strip()
        except (KeyboardInterrupt, EOFError):
            print("\n\n¡Hasta pronto!")
            break

        if not user_input:
            continue

        if user_input.lower() in ("exit", "quit", "q", "salir"):
            print("\n¡Hasta pronto! Que tengas un excelente día.")
            break

        if user_input.lower() in ("new", "nuevo"):
            phone = _random_phone()
            print(f"\n>> Nuevo contacto: {phone}\n")
            continue

        try:
            result = service.handle_incoming_message(DEFAULT_TENANT_ID, phone, user_input, args.name)
        except KeyboardInterrupt:
            print("\n\n¡Hasta pronto!")
            break

        for call in result.tool_calls:
            logger.debug("tool %s -> %s", call.name, "ok" if call.result.success else call.result.message)
        print(f"\n{ASSISTANT_NAME}: {result.reply}\n")

        if result.contact is not None:
            compactor.maybe_compact(result.contact)


if __name__ == "__main__":
    main()
