#!/usr/bin/env python3
"""
VoiceChat CLI - Command Line Interface for VoiceChat
"""
import argparse
import sys

import yaml

from . import config as CFG
from .error_handler import VoiceChatException, error_context
from .logging_utils import enable_debug_logging


def _cmd_proxy(args) -> int:
    from .proxy_server import build_service

    host, port = CFG.get_proxy_host_port()
    build_service().run(host=args.host or host, port=args.port or port, debug=args.debug)
    return 0


def _cmd_chat(args) -> int:
    from .chat_api import ProxyChatClient
    from .speech import ConsoleRecognizer, Pyttsx3Synthesizer, SpeechSynthesisQueue
    from .turn_controller import TurnController

    client = ProxyChatClient(base_url=args.url)
    if not client.check_health():
        print(f"Warning: chat proxy at {client.base_url} is not answering. Start it with `voicechat proxy`.")

    recognizer = ConsoleRecognizer()
    speech = SpeechSynthesisQueue(
        Pyttsx3Synthesizer(),
        on_job_start=lambda job: print(f"AI: {job.text}"),
    )
    controller = TurnController(chat_client=client, speech=speech, recognition_backend=recognizer)
    controller.register_state_callback(lambda old, new: print(f"[{new.value}]") if args.debug else None)

    if not controller.enable_voice_mode():
        print("Voice input is not available.")
        return 1

    print("Voice mode on. Type what you would say and press Enter.")
    print("Say 'stop', 'pause' or 'resume' to control speech. /status shows state, /voice toggles listening, /quit exits.")
    try:
        for line in sys.stdin:
            line = line.strip()
            if line in ("/quit", "/exit"):
                break
            if line == "/status":
                print(controller.status())
                continue
            if line == "/voice":
                print(f"Voice mode {'on' if controller.toggle_voice_mode() else 'off'}")
                continue
            recognizer.feed(line)
    except KeyboardInterrupt:
        print("\nShutting down...")
    finally:
        controller.shutdown()
    return 0


def _cmd_ask(args) -> int:
    from .providers import get_provider

    kwargs = {"base_url": args.url} if args.provider == "nvidia" and args.url else {}
    provider = get_provider(args.provider, **kwargs)
    prompt = " ".join(args.prompt).strip()
    if not prompt:
        print("Nothing to ask.")
        return 1
    with error_context("cli", "ask"):
        reply = provider.generate_text(prompt)
    print(reply)
    return 0


def _cmd_health(args) -> int:
    from .chat_api import ProxyChatClient

    client = ProxyChatClient(base_url=args.url)
    healthy = client.check_health()
    print(f"{client.base_url}: {'ok' if healthy else 'down'}")
    return 0 if healthy else 1


def _cmd_config(args) -> int:
    is_valid, errors = CFG.validate_config_silent()
    if not is_valid:
        for error in errors:
            print(error)
        return 1
    if args.dump:
        print(yaml.safe_dump(CFG.get_all(), sort_keys=False).rstrip())
        return 0
    host, port = CFG.get_proxy_host_port()
    key = CFG.get_nvidia_api_key()
    print(f"Upstream: {CFG.get_upstream_model()} @ {CFG.get_upstream_url()}")
    print(f"Proxy: {host}:{port} (clients use {CFG.get_proxy_url()})")
    print(f"NVIDIA key: {CFG.key_hint(key) if key else 'missing'}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="voicechat",
        description="VoiceChat - hands-free voice chat with hosted LLMs",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  voicechat proxy                      # Start the chat proxy service
  voicechat chat                       # Voice session (typed lines act as speech)
  voicechat ask --provider openai Hi   # One-shot question
  voicechat health                     # Check the proxy
  voicechat config --dump              # Show the loaded configuration
        """
    )
    parser.add_argument('--config', default=None, help='Path to configuration file')
    parser.add_argument('--debug', action='store_true', help='Enable debug mode')

    sub = parser.add_subparsers(dest='command', required=True)

    proxy = sub.add_parser('proxy', help='Run the chat proxy service')
    proxy.add_argument('--host', default=None)
    proxy.add_argument('--port', type=int, default=None)

    chat = sub.add_parser('chat', help='Start a voice chat session')
    chat.add_argument('--url', default=None, help='Proxy base URL')

    ask = sub.add_parser('ask', help='Ask a single question')
    ask.add_argument('--provider', choices=['nvidia', 'openai', 'gemini'], default='nvidia')
    ask.add_argument('--url', default=None, help='Proxy base URL (nvidia only)')
    ask.add_argument('prompt', nargs='+')

    health = sub.add_parser('health', help='Check the chat proxy')
    health.add_argument('--url', default=None, help='Proxy base URL')

    config = sub.add_parser('config', help='Validate and show configuration')
    config.add_argument('--dump', action='store_true', help='Print the full configuration')

    return parser


COMMANDS = {
    'proxy': _cmd_proxy,
    'chat': _cmd_chat,
    'ask': _cmd_ask,
    'health': _cmd_health,
    'config': _cmd_config,
}


def main(argv=None):
    """Main CLI entry point"""
    args = build_parser().parse_args(argv)

    if args.debug:
        enable_debug_logging()

    try:
        if args.config:
            CFG.reload_config(args.config)
        sys.exit(COMMANDS[args.command](args))
    except ValueError as e:
        print(f"Error: {e}")
        sys.exit(1)
    except VoiceChatException as e:
        print(f"Error: {e.message}")
        sys.exit(1)
    except KeyboardInterrupt:
        print("\nShutting down...")
        sys.exit(0)


if __name__ == '__main__':
    main()
