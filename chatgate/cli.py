"""
Command-line interface for Chatgate.

Provides commands for:
- Sending a message and streaming the answer
- Listing known models and their transport
- Showing remaining anonymous usage
"""

import argparse
import asyncio
import json
import logging
import platform
import sys

from chatgate import __version__, create_gateway
from chatgate.config import GatewayConfig, configure_logging
from chatgate.fingerprint import ClientAttributes, identify
from chatgate.quota import Identity
from chatgate.registry import ProviderRouter
from chatgate.schemas import ChunkEvent, CompleteEvent, ErrorEvent
from chatgate.session_cache import StaticAuthProvider


def _identity(args) -> Identity:
    attributes = ClientAttributes(
        user_agent=f"chatgate-cli/{__version__}",
        platform=platform.system(),
    )
    return Identity(
        client_id=args.client_id,
        fingerprint=identify(attributes),
        user_id=args.user_id,
    )


async def _send(args) -> int:
    gateway = create_gateway(
        config=GatewayConfig.from_env(),
        auth_provider=StaticAuthProvider(args.token),
        persistent=args.persistent,
    )
    messages = [{"role": "user", "content": args.message}]
    exit_code = 0
    try:
        async for event in gateway.send(messages, args.model, _identity(args)):
            if args.json:
                print(json.dumps(event.to_wire()), flush=True)
            elif isinstance(event, ChunkEvent):
                print(event.text, end="", flush=True)
            elif isinstance(event, CompleteEvent):
                print()
            elif isinstance(event, ErrorEvent):
                print(f"Error [{event.kind.value}]: {event.message}", file=sys.stderr)
                exit_code = 1
    finally:
        await gateway.relay.aclose()
        if gateway.writer is not None:
            await gateway.writer.close()
    return exit_code


def cmd_send(args):
    """Send one message and stream the answer to stdout."""
    sys.exit(asyncio.run(_send(args)))


def cmd_models(args):
    """List the model table."""
    router = ProviderRouter(GatewayConfig.from_env())
    models = router.list_models()

    if args.json:
        print(json.dumps(models, indent=2))
        return

    print("\n" + "=" * 60)
    print("CHATGATE MODELS")
    print("=" * 60)
    for entry in models:
        print(f"  {entry['model']:32} {entry['family']:10} {entry['transport']}")
    print("=" * 60)


def cmd_usage(args):
    """Show anonymous usage for a client."""
    gateway = create_gateway(config=GatewayConfig.from_env(), persistent=True)
    identity = _identity(args)
    usage = asyncio.run(gateway.gate.usage(identity, identity.is_authenticated))

    if args.json:
        print(json.dumps(usage, indent=2))
        return

    print(f"Used: {usage['count']} of {usage['limit']} ({usage['tier']})")
    print(f"Remaining: {usage['remaining']}")
    if usage["reset_at"]:
        print(f"Resets at: {usage['reset_at']}")


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Chatgate: streaming chat gateway CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Stream an answer from the default model
  chatgate send "Explain list comprehensions"

  # Use a batch backend and print raw event frames
  chatgate send "Hello" --model mistral-small-latest --json

  # Show how many anonymous messages are left today
  chatgate usage --client-id my-laptop
""",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    send_parser = subparsers.add_parser("send", help="Send a message")
    send_parser.add_argument("message", help="Message text")
    send_parser.add_argument("--model", "-m", default="DeepSeek-V3", help="Model id")
    send_parser.add_argument("--token", help="Bearer token for an authenticated session")
    send_parser.add_argument("--user-id", help="Authenticated user id")
    send_parser.add_argument("--client-id", default="cli", help="Client key for quota and locking")
    send_parser.add_argument("--persistent", action="store_true",
                             help="Keep the anonymous ledger in the SQLite database")
    send_parser.add_argument("--json", action="store_true", help="Print raw event frames")

    models_parser = subparsers.add_parser("models", help="List known models")
    models_parser.add_argument("--json", action="store_true", help="Print as JSON")

    usage_parser = subparsers.add_parser("usage", help="Show remaining usage")
    usage_parser.add_argument("--client-id", default="cli", help="Client key")
    usage_parser.add_argument("--user-id", help="Authenticated user id")
    usage_parser.add_argument("--json", action="store_true", help="Print as JSON")

    args = parser.parse_args()

    configure_logging(logging.DEBUG if args.verbose else logging.WARNING)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    commands = {
        "send": cmd_send,
        "models": cmd_models,
        "usage": cmd_usage,
    }

    handler = commands.get(args.command)
    if handler:
        handler(args)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
