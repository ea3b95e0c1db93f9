#!/usr/bin/env python3
"""
Main entry point for LinguaVerse.
Allows running the package with: python -m linguaverse <command> [flags]

Commands:
    conversation   Practice conversation (--agentic, --non-agentic, --peer,
                   --text, --mute, --topic=... or a bare --topic to pick one)
    assessment     Record a speaking sample and score it
    topics         Suggest topics (--interests=..., --level=...)
    personality    Check a tutor personality (--tone=..., --role=..., --scaffolding=...)
"""
import asyncio
import sys
from typing import Dict, List, Optional

from .config import Config, TutorPersonality, get_config
from .errors import ConfigurationError, MalformedResponse, NetworkFailure
from .utils import setup_logging
from .tutor.assessment import AssessmentPhase, AssessmentSession, format_elapsed
from .tutor.controller import TurnController
from .tutor.events import EventLogger, EventType, SessionMetrics, TutorEvent, TutorEventBus
from .tutor.models import ConversationMode, ScoreBar

USAGE = __doc__


def _flag_value(args: List[str], name: str) -> Optional[str]:
    prefix = f"--{name}="
    for arg in args:
        if arg.startswith(prefix):
            return arg[len(prefix):]
    return None


def _read_line() -> str:
    return sys.stdin.readline()


class ConsolePrinter:
    """Prints conversation events for a terminal user."""

    def handle_event(self, event: TutorEvent) -> None:
        data = event.data
        if event.event_type == EventType.MESSAGE_APPENDED:
            icon = "🧑" if data["role"] == "user" else "🤖"
            print(f"{icon} {data['speaker']}: {data['text']}")
        elif event.event_type == EventType.TRANSCRIPT_UPDATED and not data["is_final"]:
            print(f"   … {data['text']}", end="\r", flush=True)
        elif event.event_type == EventType.STATE_CHANGED:
            if data["current"] == "user_recording":
                print("🎧 Your turn (speak, or type and press Enter)")
            elif data["current"] == "processing_response":
                print("💭 Thinking...")
        elif event.event_type == EventType.NOTICE_RAISED:
            icon = "❌" if data["variant"] == "destructive" else "⚠️"
            print(f"{icon} {data['title']}: {data['description']}")


def _make_event_bus() -> TutorEventBus:
    bus = TutorEventBus()
    bus.subscribe_all(EventLogger().handle_event)
    bus.subscribe_all(ConsolePrinter().handle_event)
    return bus


def _print_score_bars(bars: List[ScoreBar]) -> None:
    print("\n📊 Assessment Results")
    for bar in bars:
        filled = int(round(bar.percent / 5))
        print(f"   {bar.label:<24} {'█' * filled}{'░' * (20 - filled)} {bar.value:g}/{bar.max:g}")


async def _assess_conversation(config: Config, session, bus: TutorEventBus) -> None:
    from .infrastructure.llm.client import GeminiRestClient
    from .tutor.oracles import AssessmentOracle

    client = GeminiRestClient(config.gemini_api_key, model=config.model_name, timeout=config.llm_timeout)
    assessment = AssessmentSession(None, AssessmentOracle(client), event_bus=bus,
                                   oracle_timeout=config.oracle_timeout)
    print("🔍 Analyzing your conversation...")
    result = await assessment.analyze_conversation(session)
    while result is None and assessment.phase == AssessmentPhase.FAILED:
        print("Retry? [y/N] ", end="", flush=True)
        if (await asyncio.to_thread(_read_line)).strip().lower() != "y":
            return
        result = await assessment.retry()
    if result is not None:
        _print_score_bars(assessment.score_bars())


def pick_topic(topics: List[str], answer: str) -> str:
    """A listed topic by number, the learner's own text, or the first suggestion."""
    answer = answer.strip()
    if answer.isdigit() and 1 <= int(answer) <= len(topics):
        return topics[int(answer) - 1]
    return answer or topics[0]


async def _choose_topic(config: Config) -> str:
    from .infrastructure.llm.client import GeminiRestClient
    from .tutor.oracles import TopicOracle

    client = GeminiRestClient(config.gemini_api_key, model=config.model_name, timeout=config.llm_timeout)
    topics = await TopicOracle(client).generate()
    print("💡 Pick a topic:")
    for number, topic in enumerate(topics, 1):
        print(f"   {number}. {topic}")
    print("Number or your own topic: ", end="", flush=True)
    return pick_topic(topics, await asyncio.to_thread(_read_line))


async def run_conversation(config: Config, mode: ConversationMode, topic: Optional[str],
                           voice_input: bool, choose_topic: bool = False) -> int:
    if choose_topic and not topic:
        topic = await _choose_topic(config)
    bus = _make_event_bus()
    metrics = SessionMetrics()
    bus.subscribe_all(metrics.handle_event)

    controller = TurnController.from_config(config, mode=mode, topic=topic,
                                            voice_input=voice_input, event_bus=bus)
    print(f"🗣️  {mode.value.replace('_', '-').title()} conversation. Commands: /mute, /end, /analyze, /mic")

    analyze = False
    try:
        await controller.start()
        while not controller.is_ended:
            line = await asyncio.to_thread(_read_line)
            if not line:
                break
            command = line.strip()
            if command == "/end":
                break
            if command == "/analyze":
                analyze = True
                break
            if command == "/mute":
                muted = controller.toggle_mute()
                print("🔇 Voice muted" if muted else "🔊 Voice on")
            elif command == "/mic":
                if not controller.resume_listening():
                    print("⏳ The microphone is already listening or it is not your turn")
            elif command:
                if not controller.submit_text(command):
                    print("⏳ Please wait for your turn")
    finally:
        # Also releases the microphone
        session = await controller.end_session()
    stats = controller.stats
    print(f"\n✅ Session ended: {stats.total_turns} turns "
          f"({stats.user_turns} yours, {stats.ai_turns} partner), {stats.user_word_count} words spoken")

    if analyze:
        if not session.audio_fragments:
            print("⚠️  No speech recorded, nothing to analyze")
        else:
            await _assess_conversation(config, session, bus)
    return 0


async def _show_elapsed(session: AssessmentSession) -> None:
    while True:
        print(f"\r🎙️  Recording {format_elapsed(session.elapsed_seconds)} (press Enter when you are done)",
              end="", flush=True)
        await asyncio.sleep(1.0)


async def run_assessment(config: Config) -> int:
    from .infrastructure.audio.microphone import Microphone
    from .infrastructure.llm.client import GeminiRestClient
    from .tutor.oracles import AssessmentOracle
    from .tutor.services import AudioRecorder

    bus = _make_event_bus()
    microphone = Microphone(device_index=config.input_device,
                            sample_rate=config.sample_rate, channels=config.channels)
    client = GeminiRestClient(config.gemini_api_key, model=config.model_name, timeout=config.llm_timeout)
    session = AssessmentSession(AudioRecorder(microphone), AssessmentOracle(client),
                                event_bus=bus, oracle_timeout=config.oracle_timeout)
    try:
        print("📝 Speaking Assessment: talk about yourself for about a minute.")
        if not await session.start():
            return 1
        timer = asyncio.create_task(_show_elapsed(session))
        try:
            await asyncio.to_thread(_read_line)
        finally:
            timer.cancel()
            await asyncio.wait([timer])
        print("\n🔍 Analyzing your speech...")
        result = await session.finish()

        while result is None and session.phase == AssessmentPhase.FAILED:
            print("Retry? [y/N] ", end="", flush=True)
            if (await asyncio.to_thread(_read_line)).strip().lower() != "y":
                break
            result = await session.retry()

        if result is None:
            return 1
        _print_score_bars(session.score_bars())
        return 0
    finally:
        await microphone.aclose()


async def run_topics(config: Config, interests: Optional[str], level: Optional[str]) -> int:
    from .infrastructure.llm.client import GeminiRestClient
    from .tutor.oracles import TopicOracle

    client = GeminiRestClient(config.gemini_api_key, model=config.model_name, timeout=config.llm_timeout)
    topics = await TopicOracle(client).generate(interests, level)
    print("💡 Conversation topics:")
    for topic in topics:
        print(f"   • {topic}")
    return 0


async def run_personality(config: Config, settings: Dict[str, Optional[str]]) -> int:
    from .infrastructure.llm.client import GeminiRestClient
    from .tutor.oracles import PersonalityOracle

    defaults = TutorPersonality()
    client = GeminiRestClient(config.gemini_api_key, model=config.model_name, timeout=config.llm_timeout)
    try:
        output, personality = await PersonalityOracle(client).configure(
            settings.get("tone") or defaults.emotional_tone,
            settings.get("role") or defaults.role_taking_behavior,
            settings.get("scaffolding") or defaults.scaffolding_prompts,
        )
    except (NetworkFailure, MalformedResponse) as e:
        print(f"❌ Update Failed: {e}")
        return 1

    icon = "✅" if output.success else "⚠️"
    print(f"{icon} {output.message}")
    print(f"   Tone: {personality.emotional_tone}")
    print(f"   Role: {personality.role_taking_behavior}")
    print(f"   Scaffolding: {personality.scaffolding_prompts}")
    return 0 if output.success else 1


def main():
    """Command-line interface for LinguaVerse."""
    args = sys.argv[1:]
    if not args or args[0] in ("-h", "--help", "help"):
        print(USAGE)
        sys.exit(0)

    command, flags = args[0], args[1:]
    if command not in ("conversation", "assessment", "topics", "personality"):
        print(f"❌ Unknown command: {command}")
        print(USAGE)
        sys.exit(2)

    # Load configuration from environment
    try:
        config = get_config()
    except ConfigurationError as e:
        print(f"❌ Configuration Error: {e}")
        sys.exit(1)

    log_file = setup_logging(config.log_file, config.log_level)
    print(f"📄 Logging to {log_file}")

    if command == "conversation":
        if "--peer" in flags:
            mode = ConversationMode.PEER
        elif "--non-agentic" in flags:
            mode = ConversationMode.NON_AGENTIC
        else:
            mode = ConversationMode.AGENTIC
        topic = _flag_value(flags, "topic")
        choose_topic = "--topic" in flags
        if (topic or choose_topic) and mode == ConversationMode.AGENTIC and "--agentic" not in flags:
            mode = ConversationMode.ASSESSMENT
        if "--mute" in flags:
            config.start_muted = True
        voice_input = "--text" not in flags
        if not voice_input:
            config.enable_voice = False
        config.personality = TutorPersonality.from_preset(mode.value)
        coro = run_conversation(config, mode, topic, voice_input, choose_topic)
    elif command == "assessment":
        coro = run_assessment(config)
    elif command == "topics":
        coro = run_topics(config, _flag_value(flags, "interests"), _flag_value(flags, "level"))
    else:
        coro = run_personality(config, {
            "tone": _flag_value(flags, "tone"),
            "role": _flag_value(flags, "role"),
            "scaffolding": _flag_value(flags, "scaffolding"),
        })

    try:
        exit_code = asyncio.run(coro)
    except KeyboardInterrupt:
        print("\n👋 Bye!")
        exit_code = 130
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
