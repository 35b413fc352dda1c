import argparse
import asyncio
import json
import sys
from dataclasses import replace
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

from .backends import MessagingBackend
from .command_core import CommandProcessor, backend_from_config, build_processor
from .config import AppConfig
from .errors import CommandError
from .synthesizer import ResponseSynthesizer
from .utils.logging import setup_logging
from .utils.schemas import CommandResponse


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a messaging instruction through the tool chain.")
    parser.add_argument("text", nargs="+", help="Instruction, e.g. 'Tell Jane I'm on my way'")
    parser.add_argument("--user-id", required=True, help="Acting user id")
    parser.add_argument("--screen", default="home", help="Current screen (home, conversation, contacts)")
    parser.add_argument("--conversation-id", default=None, help="Conversation open on screen")
    parser.add_argument("--seed", default=None, help="JSON seed file for the in-memory data layer")
    parser.add_argument("--no-chaining", action="store_true", help="Plan in a single round")
    parser.add_argument("--max-chain-length", type=int, default=None, help="Upper bound on plan length")
    parser.add_argument(
        "--clarification",
        default=None,
        help="Path to a saved response that asked for clarification",
    )
    parser.add_argument("--choose", type=int, default=1, help="1-based option to pick from --clarification")
    return parser.parse_args(argv)


def _clarification_response(path: str, choice: int) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as handle:
        saved = json.load(handle)
    clarification = saved.get("clarificationData") or saved.get("clarification_data")
    if not clarification:
        raise SystemExit(f"{path} does not contain a clarification request")
    options = clarification.get("options", [])
    if not 1 <= choice <= len(options):
        raise SystemExit(f"--choose must be between 1 and {len(options)}")
    return {"selectedOption": options[choice - 1], "originalClarification": clarification}


def build_request(args: argparse.Namespace, config: AppConfig) -> Dict[str, Any]:
    app_context: Dict[str, Any] = {
        "currentScreen": args.screen,
        "currentConversationId": args.conversation_id,
        "actingUserId": args.user_id,
        "deviceInfo": {"platform": "cli"},
    }
    if args.clarification:
        app_context["clarificationResponse"] = _clarification_response(args.clarification, args.choose)
    return {
        "text": " ".join(args.text),
        "appContext": app_context,
        "enableChaining": config.chaining_enabled and not args.no_chaining,
        "maxChainLength": args.max_chain_length or config.max_chain_length,
    }


async def _run(
    processor: CommandProcessor, backend: MessagingBackend, request: Dict[str, Any]
) -> CommandResponse:
    try:
        return await processor.process(request)
    finally:
        await backend.aclose()


def main(argv: Optional[List[str]] = None) -> None:
    load_dotenv()
    config = AppConfig.from_env()
    setup_logging(config.log_level)
    args = _parse_args(argv)
    if args.seed:
        config = replace(config, messaging_backend="memory", messaging_seed_path=args.seed)

    request = build_request(args, config)
    backend = backend_from_config(config)
    try:
        processor = build_processor(config, backend=backend)
    except CommandError as exc:
        asyncio.run(backend.aclose())
        response = ResponseSynthesizer().failure(exc)
    else:
        response = asyncio.run(_run(processor, backend, request))
    print(json.dumps(response.to_wire(), indent=2, ensure_ascii=False))
    if not response.success:
        sys.exit(1)


if __name__ == "__main__":
    main()
