"""
bot.py — Voice Chat · Console Voice Session
============================================
Hosts one TurnOrchestrator against the local microphone and speakers.

Usage
-----
    python bot.py [--config voice_chat_config.json] [--server http://127.0.0.1:8000]

Without --server the session talks to Groq directly (GROQ_API_KEY); with it,
chat and neural speech go through the server.py control plane.

Commands
--------
    <ENTER>        start listening / stop and send
    c              start a conversation with the starter prompt
    t              test the current voice
    v on|off       enable / disable the neural voice
    voice <id>     select a neural voice
    voices         list voices
    q              quit
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
import time
from collections import OrderedDict
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

from chat_service import GroqChatService, HttpChatService
from config import VoiceChatConfig
from contracts import CapabilityUnavailable
from orchestrator import TurnOrchestrator
from speech import MicrophoneSpeechInput, SoundDevicePlayer, SystemSpeech
from synthesis import groq_voice_factory, http_voice_factory
from turns import Turn, TurnPhase

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.DEBUG if os.getenv("VOICE_DEBUG") else logging.INFO,
    format="%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s – %(message)s",
    datefmt="%H:%M:%S",
)
log = logging.getLogger("voice_chat.bot")

EXIT_CAPABILITY = 2

HELP = "ENTER=talk  c=start conversation  t=test voice  v on|off  voice <id>  voices  q=quit"


# ---------------------------------------------------------------------------
# Console rendering
# ---------------------------------------------------------------------------

class TurnPrinter:
    """Prints each turn's user line once and its reply once it becomes visible.

    Only the most recent `keep` turn ids are remembered.
    """

    def __init__(self, keep: int = 8) -> None:
        self._keep = keep
        self._shown: OrderedDict[str, bool] = OrderedDict()  # turn id -> reply printed

    def __call__(self, turn: Turn) -> None:
        if turn.id not in self._shown:
            if turn.user_text is None:
                return
            self._shown[turn.id] = False
            print(f"\nYou: {turn.user_text}", flush=True)
            while len(self._shown) > self._keep:
                self._shown.popitem(last=False)
        if turn.visible and turn.reply_text is not None and not self._shown[turn.id]:
            self._shown[turn.id] = True
            print(f"Assistant: {turn.reply_text}", flush=True)


def print_status(text: str) -> None:
    print(f"  [{text}]", flush=True)


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------

def build_orchestrator(config: VoiceChatConfig, server_url: Optional[str]) -> TurnOrchestrator:
    if server_url:
        chat = HttpChatService(server_url, timeout_sec=config.groq.timeout_sec)
        primary_factory = http_voice_factory(server_url, config.neural_voice)
        log.info("event=wiring mode=server url=%s", server_url)
    else:
        chat = GroqChatService(config.groq)
        primary_factory = groq_voice_factory(config.neural_voice)
        log.info("event=wiring mode=direct chat_model=%s", config.groq.model)

    return TurnOrchestrator(
        speech_input=MicrophoneSpeechInput(config.transcription),
        chat=chat,
        fallback=SystemSpeech(config.system_voice),
        player=SoundDevicePlayer(),
        primary_factory=primary_factory,
        config=config,
        on_turn=TurnPrinter(),
        on_status=print_status,
    )


async def handle_command(orch: TurnOrchestrator, line: str) -> bool:
    """Apply one console command.  Returns False when the session should end."""
    cmd = line.strip()
    if cmd == "":
        if orch.listening:
            print("  ... sending", flush=True)
            turn = await orch.stop_listening_and_submit()
            if turn is None:
                print("  (nothing heard)", flush=True)
        elif await orch.start_listening():
            print("  Listening... press ENTER to send", flush=True)
        elif orch.busy:
            print("  Busy, wait for the reply", flush=True)
        else:
            print("  Microphone could not start, try again", flush=True)
    elif cmd == "q":
        return False
    elif cmd == "c":
        await orch.start_conversation()
    elif cmd == "t":
        await orch.preview_voice()
    elif cmd in ("v on", "v off"):
        if not orch.set_primary_backend_enabled(cmd == "v on"):
            print("  Neural voice is still loading", flush=True)
    elif cmd == "voices":
        for v in orch.voices():
            marker = "*" if v.get("id") == orch.voice_id else " "
            print(f"  {marker} {v.get('id')}  {v.get('name', '')}  {v.get('lang', '')}", flush=True)
    elif cmd.startswith("voice "):
        voice_id = cmd.split(None, 1)[1]
        if not orch.select_voice(voice_id):
            print(f"  Unknown voice: {voice_id}", flush=True)
    else:
        print(f"  {HELP}", flush=True)
    return True


# ---------------------------------------------------------------------------
# Event-loop stall monitor
# ---------------------------------------------------------------------------

async def _stall_monitor() -> None:
    """Log a warning whenever the event loop blocks for > 150ms."""
    TICK_MS   = 100.0
    WARN_MS   = 150.0
    prev = time.perf_counter() * 1000.0
    while True:
        await asyncio.sleep(TICK_MS / 1000.0)
        now   = time.perf_counter() * 1000.0
        drift = now - prev - TICK_MS
        if drift > WARN_MS:
            log.warning("event=event_loop_stall stall_ms=%.1f", drift)
        prev = now


# ---------------------------------------------------------------------------
# Console entrypoint
# ---------------------------------------------------------------------------

async def main(config: VoiceChatConfig, server_url: Optional[str]) -> int:
    orch = build_orchestrator(config, server_url)
    try:
        orch.mount()
    except CapabilityUnavailable as exc:
        log.error("event=session_blocked reason=%s", exc.reason)
        print(f"\nVoice chat is unavailable: {exc}", file=sys.stderr, flush=True)
        return EXIT_CAPABILITY

    log.info("event=session_start voice=%s", orch.voice_id)
    print(HELP, flush=True)

    loop = asyncio.get_running_loop()
    monitor = asyncio.create_task(_stall_monitor())
    try:
        while True:
            try:
                line = await loop.run_in_executor(None, input, "> " if orch.phase is TurnPhase.IDLE else "")
            except EOFError:
                break
            if not await handle_command(orch, line):
                break
    finally:
        monitor.cancel()
        try:
            await monitor
        except asyncio.CancelledError:
            pass
        await orch.close()
        log.info("event=session_shutdown turns=%d", len(orch.turns))
    return 0


def _parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Push-to-talk voice chat in the terminal")
    parser.add_argument(
        "--config",
        default=os.getenv("VOICE_CHAT_CONFIG", "voice_chat_config.json"),
        help="Path to the JSON config file (defaults are used if it does not exist)",
    )
    parser.add_argument(
        "--server",
        default=os.getenv("VOICE_CHAT_SERVER"),
        help="Base URL of the server.py control plane; talk to Groq directly when omitted",
    )
    return parser.parse_args(argv)


if __name__ == "__main__":
    args = _parse_args()
    _config = VoiceChatConfig.load(args.config)
    try:
        sys.exit(asyncio.run(main(_config, args.server)))
    except KeyboardInterrupt:
        log.info("event=interrupted")
