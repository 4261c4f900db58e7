"""
Command-line voice client.

    realtime-voice                 # through the relay at RELAY_URL
    realtime-voice --direct        # straight to the provider
    realtime-voice --device-in 2 --device-out 4

Press Enter to end a turn; Ctrl-C (or EOF) ends the session.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from typing import Optional, Sequence

from dotenv import load_dotenv

import observability.logger as logger
from config import AppConfig
from audio.capture import CaptureError
from session.errors import RealtimeError


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="realtime-voice", description="Talk to a realtime voice model.")
    parser.add_argument("--direct", action="store_true", help="connect to the provider instead of the relay")
    parser.add_argument("--url", default=None, help="override the relay (or provider) websocket URL")
    parser.add_argument("--device-in", type=int, default=None, help="input device index")
    parser.add_argument("--device-out", type=int, default=None, help="output device index")
    return parser


async def run(config: AppConfig, args: argparse.Namespace) -> int:
    # sounddevice needs PortAudio; keep the import off the relay/test path
    from audio.devices import SoundDeviceInput, SoundDeviceOutput  # pylint: disable=import-outside-toplevel
    from client.voice_client import VoiceClient  # pylint: disable=import-outside-toplevel

    failed = asyncio.Event()

    def on_error(message: str) -> None:
        print(f"\n[error] {message}", file=sys.stderr)
        failed.set()

    client = VoiceClient(
        config=config,
        capture_device=SoundDeviceInput(device=args.device_in),
        output_device=SoundDeviceOutput(device=args.device_out),
        direct=args.direct,
        url=args.url,
        on_text=lambda text: print(text, end="", flush=True),
        on_transcript=lambda text: print(f"\n[you] {text}", flush=True),
        on_error=on_error,
    )

    try:
        await client.start()
    except RealtimeError:
        # already reported through on_error
        return 1
    except CaptureError as exc:
        print(f"[error] Microphone unavailable: {exc}", file=sys.stderr)
        return 1

    print("Listening. Press Enter to end your turn, Ctrl-C to quit.", flush=True)
    try:
        while not failed.is_set():
            line = await asyncio.to_thread(sys.stdin.readline)
            if not line or failed.is_set():
                break
            await client.finish_turn()
    finally:
        await client.close()

    return 1 if failed.is_set() else 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    load_dotenv()
    config = AppConfig.load_from_env()
    logger.configure(enabled=config.enable_json_logs)

    try:
        return asyncio.run(run(config, args))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
