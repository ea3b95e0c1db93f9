import asyncio

import pytest

from conftest import begin_conversation, settle, wait_until
from linguaverse.errors import MalformedResponse, NetworkFailure, SilenceTimeout, SynthesisUnavailable
from linguaverse.infrastructure.audio.speech.stt import TranscriptEvent
from linguaverse.tutor.controller import (
    AGENTIC_OPENING, NON_AGENTIC_OPENING, PEER_OPENING, TurnController,
)
from linguaverse.tutor.events import EventType, SessionMetrics
from linguaverse.tutor.models import (
    AI_TUTOR, DEFAULT_USER, PEER_PARTNER, ConversationMode, SpeakerRole, TurnState,
)
from linguaverse.tutor.oracles import PeerResponder, SpeechOracle
from linguaverse.tutor.services import (
    AudioRecorder, PlaybackEvent, SpeechSynthesisPlayer, TranscriptCapture,
)
from linguaverse.tutor.testing import (
    ActivityMonitor, FakeAudioOutput, FakeMicrophone, FakeRecognizer, MockAudioRecorder,
    MockFeedbackOracle, MockSpeechPlayer, MockSynthesizer, ScriptedTranscriptCapture,
    create_mock_conversation_setup, sample_scores, speech_chunk,
)


async def test_start_speaks_opening_line_then_listens(setup):
    controller = setup["controller"]

    await begin_conversation(setup)

    assert setup["player"].spoken_messages == [AGENTIC_OPENING]
    assert controller.state_trace[:3] == [TurnState.IDLE, TurnState.AI_SPEAKING, TurnState.USER_RECORDING]
    assert [m.text for m in controller.messages] == [AGENTIC_OPENING]
    assert controller.messages[0].speaker == AI_TUTOR
    assert setup["capture"].is_active
    assert setup["recorder"].is_recording


async def test_start_twice_is_ignored(setup):
    controller = setup["controller"]
    await begin_conversation(setup)

    await controller.start()

    assert len(controller.messages) == 1


async def test_lets_talk_about_food(manual_setup):
    reply = "Food is my favourite topic! What did you eat today?"
    manual_setup["oracle"].replies = [reply]
    controller = manual_setup["controller"]
    capture = manual_setup["capture"]
    player = manual_setup["player"]
    await begin_conversation(manual_setup)

    capture.say("Let's talk about food")
    await controller.wait_for_state(TurnState.AI_SPEAKING)

    call = manual_setup["oracle"].calls[0]
    assert call["spoken_text"] == "Let's talk about food"
    assert call["assessment"] is None
    assert call["history"] == [{"text": AGENTIC_OPENING, "isAI": True}]
    assert [m.text for m in controller.messages] == [AGENTIC_OPENING, "Let's talk about food", reply]

    await player.wait_until_speaking()
    assert player.spoken_messages[-1] == reply
    assert not capture.is_active

    player.finish()
    await controller.wait_for_state(TurnState.USER_RECORDING)
    await wait_until(lambda: capture.is_active)
    assert controller.state == TurnState.USER_RECORDING


async def test_capture_and_playback_never_overlap():
    setup = create_mock_conversation_setup(replies=["One.", "Two.", "Three."])
    controller = setup["controller"]
    capture = setup["capture"]
    await begin_conversation(setup)

    for text in ("first thing", "second thing", "third thing"):
        count = len(controller.messages)
        capture.say(text)
        await wait_until(lambda: len(controller.messages) == count + 2)
        await controller.wait_for_state(TurnState.USER_RECORDING)
        await wait_until(lambda: capture.is_active)

    assert setup["monitor"].violations == []
    trace = controller.state_trace
    for i, state in enumerate(trace):
        if state == TurnState.AI_SPEAKING and i > 1:
            assert trace[i - 1] == TurnState.PROCESSING_RESPONSE
        if state == TurnState.PROCESSING_RESPONSE:
            assert trace[i - 1] == TurnState.USER_RECORDING


async def test_messages_grow_in_timestamp_order():
    setup = create_mock_conversation_setup()
    controller = setup["controller"]
    await begin_conversation(setup)

    lengths = [len(controller.messages)]
    for text in ("hello", "how are you", "goodbye"):
        assert controller.submit_text(text)
        await wait_until(lambda: len(controller.messages) == lengths[-1] + 2)
        await controller.wait_for_state(TurnState.USER_RECORDING)
        lengths.append(len(controller.messages))

    assert lengths == [1, 3, 5, 7]
    stamps = [m.timestamp for m in controller.messages]
    assert stamps == sorted(stamps)
    assert len({m.id for m in controller.messages}) == len(controller.messages)
    roles = [m.speaker.role for m in controller.messages]
    assert roles == [SpeakerRole.AI_AGENT] + [SpeakerRole.USER, SpeakerRole.AI_AGENT] * 3


async def test_mute_during_ai_speech_hands_turn_over_in_same_tick(manual_setup):
    controller = manual_setup["controller"]
    player = manual_setup["player"]

    await controller.start()
    await player.wait_until_speaking()
    assert controller.state == TurnState.AI_SPEAKING
    assert player.is_playing

    assert controller.toggle_mute() is True

    assert controller.state == TurnState.USER_RECORDING
    assert player.position == 0.0
    assert not player.is_playing

    await wait_until(lambda: manual_setup["capture"].is_active)
    await settle()
    assert manual_setup["monitor"].violations == []
    assert player.events[-1].interrupted


async def test_muted_reply_is_appended_without_synthesis():
    setup = create_mock_conversation_setup(replies=["Quiet reply."], muted=True)
    controller = setup["controller"]
    await begin_conversation(setup)

    setup["capture"].say("hello")
    await wait_until(lambda: len(controller.messages) == 3)
    await controller.wait_for_state(TurnState.USER_RECORDING)

    assert controller.messages[-1].text == "Quiet reply."
    assert setup["player"].spoken_messages == []
    assert TurnState.AI_SPEAKING in controller.state_trace


async def test_unmute_restores_voice(setup):
    controller = setup["controller"]
    await begin_conversation(setup)

    controller.toggle_mute()
    assert controller.toggle_mute() is False
    assert setup["player"].muted is False


async def test_oracle_failure_shows_one_destructive_notice(setup):
    setup["oracle"].replies = [NetworkFailure("connection reset")]
    controller = setup["controller"]
    await begin_conversation(setup)

    setup["capture"].say("hello")
    await controller.wait_for_state(TurnState.PROCESSING_RESPONSE)
    await controller.wait_for_state(TurnState.USER_RECORDING)
    await wait_until(lambda: setup["capture"].is_active)

    assert len(controller.messages) == 1
    destructive = [n for n in controller.notices if n.is_destructive]
    assert len(destructive) == 1
    assert destructive[0].title == "Error"
    assert destructive[0].description == "Failed to get a response from the AI."

    # The next utterance goes through normally
    setup["capture"].say("hello again")
    await wait_until(lambda: len(controller.messages) == 3)
    assert controller.messages[1].text == "hello again"
    assert len([n for n in controller.notices if n.is_destructive]) == 1


async def test_malformed_reply_is_recoverable(setup):
    setup["oracle"].replies = [MalformedResponse("missing feedback")]
    controller = setup["controller"]
    await begin_conversation(setup)

    assert controller.submit_text("hi")
    await controller.wait_for_state(TurnState.USER_RECORDING)

    assert len(controller.messages) == 1
    assert controller.notices[-1].is_destructive


async def test_oracle_timeout_counts_as_network_failure():
    setup = create_mock_conversation_setup(oracle_timeout=0.05)
    setup["oracle"].gate = asyncio.Event()
    controller = setup["controller"]
    errors = []
    controller.event_bus.subscribe(EventType.ERROR_OCCURRED, errors.append)
    await begin_conversation(setup)

    assert controller.submit_text("are you there?")
    await controller.wait_for_state(TurnState.USER_RECORDING)

    assert len(controller.messages) == 1
    assert errors[-1].data["error_type"] == "NetworkFailure"


async def test_reply_after_end_session_is_dropped(setup):
    gate = asyncio.Event()
    setup["oracle"].gate = gate
    controller = setup["controller"]
    await begin_conversation(setup)

    setup["capture"].say("tell me something")
    await controller.wait_for_state(TurnState.PROCESSING_RESPONSE)
    session = await controller.end_session()
    gate.set()
    await settle(20)

    assert controller.state == TurnState.SESSION_ENDED
    assert [m.text for m in session.messages] == [AGENTIC_OPENING]
    assert setup["player"].spoken_messages == [AGENTIC_OPENING]
    assert session.ended_at is not None


async def test_submit_text_refused_outside_user_turn(manual_setup):
    controller = manual_setup["controller"]
    player = manual_setup["player"]

    assert controller.submit_text("too early") is False

    await controller.start()
    await player.wait_until_speaking()
    assert controller.submit_text("while AI speaks") is False

    player.finish()
    await controller.wait_for_state(TurnState.USER_RECORDING)
    manual_setup["oracle"].gate = asyncio.Event()
    assert controller.submit_text("first") is True
    assert controller.state == TurnState.PROCESSING_RESPONSE
    assert controller.submit_text("second") is False
    assert controller.submit_text("   ") is False

    await wait_until(lambda: len(manual_setup["oracle"].calls) == 1)
    manual_setup["oracle"].gate.set()
    await controller.wait_for_state(TurnState.AI_SPEAKING)
    assert len(manual_setup["oracle"].calls) == 1


async def test_typed_turn_discards_recorder_clip(setup):
    controller = setup["controller"]
    await begin_conversation(setup)

    assert controller.submit_text("I like tennis")
    await wait_until(lambda: len(controller.messages) == 3)

    assert setup["recorder"].clips
    assert controller.session.audio_fragments == []


async def test_voiced_turn_keeps_audio(setup):
    controller = setup["controller"]
    await begin_conversation(setup)

    setup["capture"].say("I went hiking")
    await wait_until(lambda: len(controller.messages) == 3)

    assert len(controller.session.audio_fragments) == 1
    assert not controller.session.audio_fragments[0].is_empty


async def test_rejected_turn_still_keeps_voiced_audio(setup):
    setup["oracle"].replies = [NetworkFailure("down")]
    controller = setup["controller"]
    await begin_conversation(setup)

    setup["capture"].say("hello")
    await wait_until(lambda: bool(controller.notices))

    assert len(controller.session.audio_fragments) == 1
    assert len(controller.messages) == 1


async def test_interim_text_updates_preview_only(setup):
    controller = setup["controller"]
    await begin_conversation(setup)

    setup["capture"].say_interim("I think")
    await wait_until(lambda: controller.transcript_preview == "I think")

    assert controller.state == TurnState.USER_RECORDING
    assert setup["oracle"].calls == []


async def test_listening_is_not_restarted_while_capture_is_active(setup):
    controller = setup["controller"]
    capture = setup["capture"]
    await begin_conversation(setup)
    assert capture.start_count == 1

    assert controller.resume_listening() is False
    await settle()

    assert capture.start_count == 1


async def test_recognition_error_mid_stream_allows_retry(setup):
    controller = setup["controller"]
    capture = setup["capture"]
    await begin_conversation(setup)

    capture.fail()
    await wait_until(lambda: bool(controller.notices))

    assert controller.state == TurnState.USER_RECORDING
    assert not capture.is_active
    assert not setup["recorder"].is_recording
    assert controller.notices[-1].title == "Speech recognition stopped"

    assert controller.resume_listening() is True
    await wait_until(lambda: capture.is_active)
    assert capture.start_count == 2


async def test_permission_denied_keeps_typed_input_available(setup):
    controller = setup["controller"]
    setup["capture"].deny_permission()

    await begin_conversation(setup)

    assert controller.state == TurnState.USER_RECORDING
    assert controller.notices[-1].title == "Microphone unavailable"
    assert controller.notices[-1].is_destructive
    assert not setup["capture"].is_active

    assert controller.submit_text("typing instead")
    await wait_until(lambda: len(controller.messages) == 3)


async def test_unsupported_recognition_falls_back_to_text():
    monitor = ActivityMonitor()
    capture = ScriptedTranscriptCapture(monitor, unsupported=True)
    controller = TurnController(
        capture=capture,
        recorder=MockAudioRecorder(),
        oracle=MockFeedbackOracle(),
        player=MockSpeechPlayer(monitor),
    )
    await controller.start()
    await controller.wait_for_state(TurnState.USER_RECORDING)
    await wait_until(lambda: bool(controller.notices))

    assert controller.notices[0].title == "Voice input not supported"
    assert not controller.notices[0].is_destructive
    assert controller.submit_text("hello")


async def test_playback_failure_is_treated_as_finished():
    monitor = ActivityMonitor()
    controller = TurnController(
        capture=ScriptedTranscriptCapture(monitor),
        recorder=MockAudioRecorder(),
        oracle=MockFeedbackOracle(),
        player=MockSpeechPlayer(monitor, fail_with=SynthesisUnavailable("no voice")),
    )
    failures = []
    controller.event_bus.subscribe(EventType.PLAYBACK_FAILED, failures.append)

    await controller.start()
    await controller.wait_for_state(TurnState.USER_RECORDING)

    assert len(failures) == 1
    assert controller.notices[-1].title == "Voice unavailable"
    assert not controller.notices[-1].is_destructive


async def test_end_session_stops_everything(manual_setup):
    controller = manual_setup["controller"]
    player = manual_setup["player"]
    await controller.start()
    await player.wait_until_speaking()

    session = await controller.end_session()

    assert controller.state == TurnState.SESSION_ENDED
    assert not player.is_playing
    assert not manual_setup["capture"].is_active
    assert not manual_setup["recorder"].is_recording
    assert await controller.end_session() is session
    assert controller.submit_text("hello?") is False


async def test_end_session_hands_off_audio(setup):
    controller = setup["controller"]
    await begin_conversation(setup)
    setup["capture"].say("one")
    await wait_until(lambda: len(controller.messages) == 3)
    await controller.wait_for_state(TurnState.USER_RECORDING)
    await wait_until(lambda: setup["capture"].is_active)

    session = await controller.end_session()

    # One clip per voiced turn plus the unfinished one
    assert len(session.audio_fragments) == 2
    assert not setup["capture"].is_active


async def test_non_agentic_mode_sends_direct_response_request():
    setup = create_mock_conversation_setup(mode=ConversationMode.NON_AGENTIC)
    controller = setup["controller"]
    await begin_conversation(setup)

    controller.submit_text("What is the capital of France?")
    await wait_until(lambda: len(setup["oracle"].calls) == 1)

    assert controller.messages[0].text == NON_AGENTIC_OPENING
    assert setup["oracle"].calls[0]["feedback_request"] == "Provide a direct response."


async def test_assessment_mode_asks_about_topic():
    setup = create_mock_conversation_setup(mode=ConversationMode.ASSESSMENT, topic="cooking")
    controller = setup["controller"]
    await begin_conversation(setup)

    controller.submit_text("I cook pasta a lot")
    await wait_until(lambda: len(setup["oracle"].calls) == 1)

    assert "cooking" in controller.messages[0].text
    assert setup["oracle"].calls[0]["feedback_request"] == (
        "Ask a short follow-up question about the topic: cooking."
    )


async def test_assessment_scores_are_passed_to_oracle():
    scores = sample_scores()
    setup = create_mock_conversation_setup(assessment=scores)
    controller = setup["controller"]
    await begin_conversation(setup)

    controller.submit_text("hi")
    await wait_until(lambda: len(setup["oracle"].calls) == 1)

    assert setup["oracle"].calls[0]["assessment"] is scores


async def test_peer_mode_uses_peer_partner():
    monitor = ActivityMonitor()
    controller = TurnController(
        capture=ScriptedTranscriptCapture(monitor),
        recorder=MockAudioRecorder(),
        oracle=PeerResponder(delay=(0.0, 0.0)),
        player=MockSpeechPlayer(monitor),
        mode=ConversationMode.PEER,
    )
    await controller.start()
    await controller.wait_for_state(TurnState.USER_RECORDING)

    controller.submit_text("Let's talk about movies")
    await wait_until(lambda: len(controller.messages) == 3)

    assert controller.messages[0].text == PEER_OPENING
    assert controller.messages[0].speaker == PEER_PARTNER
    assert controller.messages[2].text == PeerResponder.REPLY
    assert controller.messages[2].to_history()["isAI"] is True
    assert controller.messages[1].speaker == DEFAULT_USER


async def test_stats_and_metrics(setup):
    controller = setup["controller"]
    metrics = SessionMetrics()
    controller.event_bus.subscribe_all(metrics.handle_event)
    await begin_conversation(setup)

    controller.submit_text("I really like green tea")
    await wait_until(lambda: len(controller.messages) == 3)
    await controller.end_session()

    stats = controller.stats
    assert stats.total_turns == 3
    assert stats.user_turns == 1
    assert stats.ai_turns == 2
    assert stats.user_word_count == 5

    counts = metrics.get_metrics()
    assert counts["sessions_started"] == 1
    assert counts["sessions_ended"] == 1
    assert counts["user_messages"] == 1
    assert counts["partner_messages"] == 2


async def test_wait_for_state_times_out(setup):
    with pytest.raises(asyncio.TimeoutError):
        await setup["controller"].wait_for_state(TurnState.SESSION_ENDED, timeout=0.01)


# Real media services over fake devices

class HearingRecognizer:
    """The first ``timeouts`` streams time out; later streams hear one utterance per chunk."""

    def __init__(self, utterances, timeouts=1):
        self.utterances = list(utterances)
        self.timeouts = timeouts
        self.stream_count = 0

    async def stream(self, tap, sample_rate=None):
        self.stream_count += 1
        if self.timeouts:
            self.timeouts -= 1
            raise SilenceTimeout("no speech before the provider deadline")
        while True:
            chunk = await tap.read()
            if chunk is None:
                return
            if self.utterances:
                yield TranscriptEvent(self.utterances.pop(0), is_final=True)


def create_service_setup(recognizer=None, microphone=None, output=None, **controller_kwargs):
    microphone = microphone or FakeMicrophone()
    recognizer = recognizer or FakeRecognizer()
    output = output or FakeAudioOutput(auto_finish=True)
    capture = TranscriptCapture(recognizer, microphone)
    player = SpeechSynthesisPlayer(speech_oracle=SpeechOracle(MockSynthesizer()), output=output)
    controller = TurnController(
        capture=capture,
        recorder=AudioRecorder(microphone),
        oracle=MockFeedbackOracle(),
        player=player,
        microphone=microphone,
        **controller_kwargs,
    )
    return {
        "controller": controller,
        "capture": capture,
        "microphone": microphone,
        "recognizer": recognizer,
        "output": output,
        "player": player,
    }


async def test_full_turn_with_real_services():
    recognizer = HearingRecognizer(["I love street food"])
    setup = create_service_setup(recognizer)
    controller, capture, microphone = setup["controller"], setup["capture"], setup["microphone"]
    listening_during_playback = []

    def on_playback(event):
        if event.kind == PlaybackEvent.STARTED:
            listening_during_playback.append(capture.is_active)

    setup["player"].add_listener(on_playback)

    await controller.start()
    await wait_until(lambda: recognizer.stream_count == 2)

    # The silence restart stays inside the learner's turn
    assert controller.state == TurnState.USER_RECORDING
    assert capture.restarts == 1
    assert controller.notices == []

    microphone.push(speech_chunk())
    await wait_until(lambda: recognizer.stream_count == 3)

    assert controller.state_trace == [
        TurnState.IDLE, TurnState.AI_SPEAKING, TurnState.USER_RECORDING,
        TurnState.PROCESSING_RESPONSE, TurnState.AI_SPEAKING, TurnState.USER_RECORDING,
    ]
    assert [m.text for m in controller.messages] == [
        AGENTIC_OPENING, "I love street food", MockFeedbackOracle.DEFAULT_REPLY,
    ]
    assert len(setup["output"].played) == 2
    assert listening_during_playback == [False, False]
    assert microphone.open_count == 2

    session = await controller.end_session()

    assert len(session.audio_fragments) == 1
    assert session.audio_fragments[0].pcm == speech_chunk()
    assert not microphone.is_open
    assert microphone.tap_count == 0
    assert microphone.close_count == 2


async def test_end_session_during_microphone_open_releases_device():
    microphone = FakeMicrophone(open_delay=0.1)
    setup = create_service_setup(microphone=microphone, muted=True)
    controller = setup["controller"]

    await controller.start()
    assert controller.state == TurnState.USER_RECORDING
    await asyncio.sleep(0.02)
    await controller.end_session()

    assert microphone.open_count == 1
    assert not microphone.is_open
    assert microphone.tap_count == 0
    assert microphone.close_count == 1
    assert not setup["capture"].is_active


async def test_audio_output_os_error_becomes_voice_notice():
    output = FakeAudioOutput(error=OSError(28, "No space left on device"))
    setup = create_service_setup(output=output)
    controller = setup["controller"]
    failures = []
    controller.event_bus.subscribe(EventType.PLAYBACK_FAILED, failures.append)

    await controller.start()
    await controller.wait_for_state(TurnState.USER_RECORDING)

    assert [n.title for n in controller.notices] == ["Voice unavailable"]
    assert not controller.notices[0].is_destructive
    assert failures[0].data["error_type"] == "PlaybackError"
    assert controller.state == TurnState.USER_RECORDING
    await controller.end_session()
