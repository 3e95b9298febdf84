#!/usr/bin/env python3
"""
VoiceChat Turn Controller

Coordinates listening, thinking and speaking for a hands-free conversation:
debounced submission of what the user said, streaming replies spoken in
chunks, barge-in while the assistant talks, stop/pause/resume voice commands,
and watchdogs that keep recognition alive.

All mutable state lives behind one RLock. Replies run on a worker thread; a
new turn cancels the previous request and bumps the turn id so a superseded
turn never touches state again.
"""
import re
import threading
import time
from dataclasses import dataclass, fields
from typing import Any, Callable, Dict, Optional

from . import config as CFG
from .cancellation import CancelToken
from .chat_api import ProxyChatClient
from .conversation_manager import ConversationManager, ConversationState, StateTracker
from .error_handler import ErrorSeverity, RequestCancelled, get_error_handler, handle_error
from .logging_utils import setup_logger
from .speech import Pyttsx3Synthesizer, SpeechSynthesisQueue, create_speech_recognition
from .voice_commands import (PAUSE, RESUME, STOP, Classification, TranscriptContext, classify, extract_name,
                             strip_name_intro)

logger = setup_logger("voicechat.turn_controller", "voicechat.log")

FILLER_TEXT = "Okay…"
ERROR_APOLOGY = "Sorry, I ran into a problem getting a reply. Please try again."
FALLBACK_PARAMS = {"max_tokens": 96, "temperature": 0.35}

CHUNK_MAX_CHARS = 70
CHUNK_CONTINUE_CHARS = 40
_TERMINAL_PUNCTUATION_RE = re.compile(r"[.!?]\s*$")


@dataclass
class TurnTimings:
    """Delays and intervals of the voice loop, in seconds"""
    submit_delay: float = 1.0
    submit_delay_thinking: float = 0.45
    barge_in_submit_delay: float = 0.25
    interrupt_submit_delay: float = 0.5
    dedupe_window: float = 1.2
    restart_delay: float = 0.15
    error_restart_delay: float = 0.8
    speaking_error_restart_delay: float = 0.12
    watchdog_interval: float = 0.7
    command_watchdog_interval: float = 0.55
    recognition_stale_after: float = 1.4
    kick_min_interval: float = 0.9
    kick_restart_delay: float = 0.08
    filler_delay: float = 0.65

    @classmethod
    def from_config(cls) -> "TurnTimings":
        configured = CFG.get_turn_timings()
        return cls(**{f.name: configured[f.name] for f in fields(cls) if f.name in configured})


class ThreadScheduler:
    """Timers and worker threads for the controller"""

    def call_later(self, delay: float, fn: Callable[[], None]):
        timer = threading.Timer(max(0.0, delay), fn)
        timer.daemon = True
        timer.start()
        return timer

    def spawn(self, fn: Callable[[], None], name: str = "VoiceChatTurn"):
        thread = threading.Thread(target=fn, name=name, daemon=True)
        thread.start()
        return thread


class SpeechChunker:
    """Buffers streamed text and releases speakable chunks.

    A chunk is released at terminal punctuation, at CHUNK_MAX_CHARS, or at
    CHUNK_CONTINUE_CHARS once something has already been spoken.
    """

    def __init__(self, emit: Callable[[str], None]):
        self._emit = emit
        self._buffer = ""
        self.spoke_anything = False

    def feed(self, delta: str) -> None:
        self._buffer += delta
        self.flush()

    def flush(self, force: bool = False) -> None:
        trimmed = self._buffer.strip()
        if not trimmed:
            return
        ready = (
            force
            or bool(_TERMINAL_PUNCTUATION_RE.search(trimmed))
            or len(trimmed) >= CHUNK_MAX_CHARS
            or (self.spoke_anything and len(trimmed) >= CHUNK_CONTINUE_CHARS)
        )
        if not ready:
            return
        self._buffer = ""
        self.spoke_anything = True
        self._emit(trimmed)


def _cancel_timer(handle) -> None:
    if handle is not None:
        handle.cancel()


class TurnController:
    """Voice conversation state machine: idle, listening, thinking, speaking"""

    def __init__(self, chat_client: Optional[ProxyChatClient] = None,
                 speech: Optional[SpeechSynthesisQueue] = None,
                 recognition_backend: Any = None,
                 conversation: Optional[ConversationManager] = None,
                 scheduler: Optional[ThreadScheduler] = None,
                 timings: Optional[TurnTimings] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.client = chat_client or ProxyChatClient()
        self.speech = speech or SpeechSynthesisQueue(Pyttsx3Synthesizer())
        self.conversation = conversation or ConversationManager()
        self.scheduler = scheduler or ThreadScheduler()
        self.timings = timings or TurnTimings.from_config()
        self._clock = clock

        self._lock = threading.RLock()
        self._tracker = StateTracker()
        self.recognition = create_speech_recognition(
            recognition_backend,
            continuous=False,
            on_start=self.on_recognition_start,
            on_end=self.on_recognition_end,
            on_error=self.on_recognition_error,
            on_interim=self.on_interim,
            on_final=self.on_final,
        )

        self._voice_mode = False
        self._is_listening = False
        self._is_loading = False
        self._tts_active = False
        self._current_ai_speech = ""
        self._heard_text = ""
        self._pending_submit = False
        self._last_error = ""

        self._submit_timer = None
        self._restart_timer = None
        self._watchdog_timer = None
        self._command_watchdog_timer = None
        self._watchdog_generation = 0

        self._request_token: Optional[CancelToken] = None
        self._turn_id = 0

        self._last_submitted_text = ""
        self._last_submitted_at = float("-inf")
        self._last_kick_at = float("-inf")
        self._last_rec_event_at = float("-inf")

    # ---- Introspection ----

    @property
    def state(self) -> ConversationState:
        return self._tracker.state

    @property
    def voice_mode(self) -> bool:
        with self._lock:
            return self._voice_mode

    @property
    def heard_text(self) -> str:
        with self._lock:
            return self._heard_text

    @property
    def pending_submit(self) -> bool:
        with self._lock:
            return self._pending_submit

    @property
    def last_error(self) -> str:
        with self._lock:
            return self._last_error

    def register_state_callback(self, callback: Callable[[ConversationState, ConversationState], None]):
        self._tracker.register_state_callback(callback)

    def status(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "state": self.state.value,
                "state_seconds": round(time.time() - self._tracker.changed_at, 2),
                "voice_mode": self._voice_mode,
                "is_listening": self._is_listening,
                "speaking": self._synth_active(),
                "user_name": self.conversation.user_name,
                "last_error": self._last_error,
                "turns": self.conversation.turn_count,
                "recognition_supported": self.recognition is not None,
                "errors": get_error_handler().get_error_stats(),
            }

    # ---- Voice mode ----

    def enable_voice_mode(self) -> bool:
        with self._lock:
            if self.recognition is None:
                logger.warning("Voice input is not supported: no speech recognition backend")
                return False
            if self._voice_mode:
                return True
            self._voice_mode = True
            self._set_state(ConversationState.LISTENING)
            self._start_watchdogs()
            self._start_recognition()
            logger.info("Voice mode on")
            return True

    def disable_voice_mode(self) -> None:
        with self._lock:
            self._voice_mode = False
            _cancel_timer(self._restart_timer)
            _cancel_timer(self._submit_timer)
            self._restart_timer = None
            self._submit_timer = None
            self._stop_watchdogs()
            self._pending_submit = False
            self._heard_text = ""
            if self.recognition is not None:
                self.recognition.stop()
            self._is_listening = False
            self.speech.cancel()
            self._tts_active = False
            self._current_ai_speech = ""
            self._abort_request()
            self._is_loading = False
            self._set_state(ConversationState.IDLE)
            logger.info("Voice mode off")

    def toggle_voice_mode(self) -> bool:
        """Flip voice mode; returns the new setting"""
        if self.voice_mode:
            self.disable_voice_mode()
            return False
        return self.enable_voice_mode()

    def shutdown(self) -> None:
        self.disable_voice_mode()
        self.speech.shutdown()

    # ---- Recognition events ----

    def on_recognition_start(self) -> None:
        with self._lock:
            self._last_rec_event_at = self._clock()
            self._heard_text = ""
            _cancel_timer(self._submit_timer)
            self._submit_timer = None
            self._pending_submit = False
            self._is_listening = True

    def on_recognition_end(self) -> None:
        with self._lock:
            self._last_rec_event_at = self._clock()
            self._is_listening = False
            if self._heard_text.strip():
                self._schedule_submit(self.timings.submit_delay)
                return
            self._schedule_restart(self.timings.restart_delay)

    def on_recognition_error(self, error: Any = None) -> None:
        with self._lock:
            self._last_rec_event_at = self._clock()
            self._is_listening = False
            logger.debug(f"Recognition error: {error}")
            if self._synth_active():
                # Errors are common while the assistant talks; keep commands working
                self._kick_recognition()
                self._schedule_restart(self.timings.speaking_error_restart_delay)
                return
            self._schedule_restart(self.timings.error_restart_delay)

    def _classify(self, text: str) -> Classification:
        return classify(text, TranscriptContext(self._current_ai_speech, self._synth_active()))

    def on_interim(self, text: str) -> None:
        with self._lock:
            self._last_rec_event_at = self._clock()
            result = self._classify(text)

            if result.kind == "command":
                self.handle_voice_command(result.command)
                return
            if result.kind == "echo":
                return

            if self._synth_active():
                # Real speech over the assistant: stop talking, keep what was heard
                self.force_stop_to_listen(text, submit=False, kick=False)
                return

            thinking = self._is_loading
            if thinking:
                self._abort_request()
            self._heard_text = text
            self._schedule_submit(self.timings.submit_delay_thinking if thinking else self.timings.submit_delay)

    def on_final(self, text: str, confidence: Optional[float] = None) -> None:
        with self._lock:
            self._last_rec_event_at = self._clock()
            result = self._classify(text)

            if result.kind == "command":
                self.handle_voice_command(result.command)
                return

            if self._synth_active():
                if result.is_interrupt:
                    self.force_stop_to_listen(text, submit=not result.is_ack, kick=True)
                    return
                if result.kind != "echo":
                    self.force_stop_to_listen(text, submit=False, kick=False)
                    self._schedule_submit(self.timings.barge_in_submit_delay, allow_while_speaking=True)
                return

            self._heard_text = text
            self._schedule_submit(self.timings.submit_delay)

    # ---- Commands and barge-in ----

    def handle_voice_command(self, command: str) -> bool:
        with self._lock:
            if command == PAUSE:
                logger.info("Voice command: pause")
                self.speech.pause()
                self._kick_recognition()
                return True
            if command == RESUME:
                logger.info("Voice command: resume")
                self.speech.resume()
                self._kick_recognition()
                return True
            if command == STOP:
                logger.info("Voice command: stop")
                self.speech.cancel()
                self._tts_active = False
                self._current_ai_speech = ""
                self._abort_request()
                self._heard_text = ""
                _cancel_timer(self._submit_timer)
                self._submit_timer = None
                self._pending_submit = False
                self._set_state(self._resting_state())
                self._schedule_restart(0)
                self._kick_recognition()
                return True
            return False

    def force_stop_to_listen(self, text: str, submit: bool = False, kick: bool = True) -> None:
        """Silence the assistant and return to listening with `text` as heard"""
        raw = (text or "").strip()
        if not raw:
            return
        with self._lock:
            self.speech.cancel()
            self._tts_active = False
            self._current_ai_speech = ""
            self._abort_request()
            self._set_state(self._resting_state())
            self._heard_text = raw
            if submit:
                self._schedule_submit(self.timings.interrupt_submit_delay, allow_while_speaking=True)
            self._schedule_restart(0)
            if kick:
                self._kick_recognition()

    # ---- Submission ----

    def _schedule_submit(self, delay: float, allow_while_speaking: bool = False) -> None:
        _cancel_timer(self._submit_timer)
        self._pending_submit = True
        self._submit_timer = self.scheduler.call_later(
            delay, self._guarded(lambda: self._flush_submit(delay, allow_while_speaking)))

    def _flush_submit(self, delay: float, allow_while_speaking: bool) -> None:
        with self._lock:
            self._submit_timer = None
            text = self._heard_text.strip()
            if not text:
                self._pending_submit = False
                return

            now = self._clock()
            norm = " ".join(text.split())
            if (norm.lower() == self._last_submitted_text.lower()
                    and now - self._last_submitted_at < self.timings.dedupe_window):
                logger.debug(f"Dropping duplicate submission: {norm[:50]}")
                self._heard_text = ""
                self._pending_submit = False
                return

            if not allow_while_speaking and self._synth_active():
                self._schedule_submit(delay, allow_while_speaking)
                return

            self._last_submitted_text = norm
            self._last_submitted_at = now
            self._heard_text = ""
            self._pending_submit = False

        self.scheduler.spawn(self._guarded(lambda: self.handle_utterance(text)))

    # ---- Turns ----

    def handle_utterance(self, raw_text: str) -> None:
        """Run one conversational turn for `raw_text` (blocking)"""
        text = str(raw_text or "").strip()
        if not text:
            return

        name = extract_name(text)
        with self._lock:
            turn_id, token = self._begin_turn()
            if name:
                rest = strip_name_intro(text)
                self.conversation.remember_user_name(name)
                self.speech.enqueue(f"Okay, {name}.")
                if not rest:
                    # Only an introduction: acknowledge without asking the model
                    self._request_token = None
                    self._set_state(self._resting_state())
                    self._schedule_restart(0)
                    return
                text = rest

            self._is_loading = True
            self._last_error = ""
            self._set_state(ConversationState.THINKING)
            self.conversation.add_user_turn(text)
            messages = self.conversation.messages()

        logger.info(f"Turn {turn_id}: {text[:80]}")
        try:
            reply = self._run_turn(turn_id, token, messages)
            self._finish_speaking(turn_id, reply)
        except Exception as e:
            if isinstance(e, RequestCancelled) or token.cancelled:
                logger.info(f"Turn {turn_id} cancelled")
            elif self._is_current(turn_id):
                self._speak_error(turn_id, e)
        finally:
            with self._lock:
                if self._is_current(turn_id):
                    self._request_token = None
                    self._is_loading = False
                    self._tts_active = False
                    self._current_ai_speech = ""
                    self._set_state(self._resting_state())
                    self._schedule_restart(self.timings.restart_delay)

    def _begin_turn(self):
        """Cancel whatever is playing or in flight and open a new turn"""
        self.speech.cancel()
        self._tts_active = False
        self._current_ai_speech = ""
        self._abort_request()
        self._turn_id += 1
        self._request_token = CancelToken()
        return self._turn_id, self._request_token

    def _is_current(self, turn_id: int) -> bool:
        with self._lock:
            return turn_id == self._turn_id

    def _run_turn(self, turn_id: int, token: CancelToken, messages) -> "_TurnReply":
        reply = _TurnReply(SpeechChunker(self.speech.enqueue))

        def on_delta(delta: str, full: str) -> None:
            if not delta:
                return
            with self._lock:
                if not self._is_current(turn_id):
                    return
                reply.received_delta = True
                reply.text = full
                self._current_ai_speech = full
                if not self._tts_active:
                    # Speaking starts now; keep the mic open for stop commands
                    self._tts_active = True
                    self._set_state(ConversationState.SPEAKING)
                    self._start_recognition()
                reply.chunker.feed(delta)

        try:
            final = self.client.generate_text_stream(messages, on_delta=on_delta, cancel_token=token)
            reply.text = final or reply.text
        except RequestCancelled:
            raise
        except Exception as e:
            if token.cancelled or reply.received_delta:
                raise
            logger.warning(f"Streaming failed ({e}); falling back to a buffered reply")
            reply.text = self._buffered_fallback(turn_id, token, messages, reply)
        return reply

    def _buffered_fallback(self, turn_id: int, token: CancelToken, messages, reply: "_TurnReply") -> str:
        filler = self.scheduler.call_later(self.timings.filler_delay,
                                           self._guarded(lambda: self._speak_filler(turn_id)))
        try:
            full = self.client.generate_text(messages, params=dict(FALLBACK_PARAMS), cancel_token=token)
        finally:
            _cancel_timer(filler)

        full = (full or "").strip()
        if full:
            with self._lock:
                if self._is_current(turn_id):
                    self.speech.enqueue(full)
                    reply.chunker.spoke_anything = True
        return full

    def _speak_filler(self, turn_id: int) -> None:
        with self._lock:
            if not self._is_current(turn_id) or self._tts_active or not self._is_loading:
                return
            self._tts_active = True
            self._set_state(ConversationState.SPEAKING)
            self._start_recognition()
            self.speech.enqueue(FILLER_TEXT)

    def _finish_speaking(self, turn_id: int, reply: "_TurnReply") -> None:
        with self._lock:
            if not self._is_current(turn_id):
                return
            final_ai = (reply.text or "").strip()
            self._request_token = None
            self._is_loading = False
            self.conversation.add_assistant_turn(final_ai)
            self._current_ai_speech = final_ai

            reply.chunker.flush(force=True)
            if not reply.chunker.spoke_anything and final_ai:
                self.speech.enqueue(final_ai, is_last=True)
            if self.speech.is_active() and not self._tts_active:
                self._tts_active = True
                self._set_state(ConversationState.SPEAKING)
                self._start_recognition()

        self._wait_for_speech(turn_id)

    def _wait_for_speech(self, turn_id: int) -> None:
        while not self.speech.wait_idle(0.1):
            if not self._is_current(turn_id):
                return

    def _speak_error(self, turn_id: int, error: Exception) -> None:
        handle_error(error, "turn_controller", "handle_utterance", ErrorSeverity.MEDIUM)
        with self._lock:
            if not self._is_current(turn_id):
                return
            self._last_error = getattr(error, "message", None) or str(error) or error.__class__.__name__
            self._is_loading = False
            self.speech.cancel()
            self._tts_active = True
            self._current_ai_speech = ERROR_APOLOGY
            self._set_state(ConversationState.SPEAKING)
            self._start_recognition()
            self.speech.enqueue(ERROR_APOLOGY, is_last=True)
        self._wait_for_speech(turn_id)

    def _abort_request(self) -> None:
        """Cancel the in-flight request, if any, and retire its turn"""
        token = self._request_token
        if token is None:
            return
        self._request_token = None
        self._turn_id += 1
        token.cancel("superseded")
        if self._is_loading:
            self._is_loading = False
            if self.state == ConversationState.THINKING:
                self._set_state(self._resting_state())

    # ---- Recognition upkeep ----

    def _synth_active(self) -> bool:
        return self._tts_active or self.speech.is_active() or self.speech.paused

    def _start_recognition(self) -> None:
        with self._lock:
            if self.recognition is None or not self._voice_mode:
                return
            if self._pending_submit or self._is_listening:
                return
            if self._synth_active() and not self._tts_active:
                return
            # Continuous so barge-in works mid-speech
            self.recognition.continuous = True
            self.recognition.start()

    def _kick_recognition(self) -> None:
        """Stop and restart recognition, at most once per kick_min_interval"""
        if not self._voice_mode or self.recognition is None:
            return
        now = self._clock()
        if now - self._last_kick_at < self.timings.kick_min_interval:
            return
        self._last_kick_at = now
        self.recognition.stop()
        self.scheduler.call_later(self.timings.kick_restart_delay, self._guarded(self._start_recognition))

    def _schedule_restart(self, delay: float) -> None:
        if not self._voice_mode:
            return
        _cancel_timer(self._restart_timer)
        self._restart_timer = self.scheduler.call_later(delay, self._guarded(self._restart_fired))

    def _restart_fired(self) -> None:
        with self._lock:
            self._restart_timer = None
            self._start_recognition()

    def _start_watchdogs(self) -> None:
        self._watchdog_generation += 1
        generation = self._watchdog_generation
        self._watchdog_timer = self.scheduler.call_later(
            self.timings.watchdog_interval, self._guarded(lambda: self._watchdog_tick(generation)))
        self._command_watchdog_timer = self.scheduler.call_later(
            self.timings.command_watchdog_interval, self._guarded(lambda: self._command_watchdog_tick(generation)))

    def _stop_watchdogs(self) -> None:
        self._watchdog_generation += 1
        _cancel_timer(self._watchdog_timer)
        _cancel_timer(self._command_watchdog_timer)
        self._watchdog_timer = None
        self._command_watchdog_timer = None

    def _watchdog_tick(self, generation: int) -> None:
        with self._lock:
            if generation != self._watchdog_generation or not self._voice_mode:
                return
            if not self._pending_submit and not self._is_listening:
                self._start_recognition()
            self._watchdog_timer = self.scheduler.call_later(
                self.timings.watchdog_interval, self._guarded(lambda: self._watchdog_tick(generation)))

    def _command_watchdog_tick(self, generation: int) -> None:
        with self._lock:
            if generation != self._watchdog_generation or not self._voice_mode:
                return
            if self._synth_active() and not self._pending_submit:
                stale = self._clock() - self._last_rec_event_at > self.timings.recognition_stale_after
                if not self._is_listening or stale:
                    self._kick_recognition()
            self._command_watchdog_timer = self.scheduler.call_later(
                self.timings.command_watchdog_interval,
                self._guarded(lambda: self._command_watchdog_tick(generation)))

    # ---- Helpers ----

    def _set_state(self, state: ConversationState) -> None:
        self._tracker.update_state(state)

    def _resting_state(self) -> ConversationState:
        return ConversationState.LISTENING if self._voice_mode else ConversationState.IDLE

    def _guarded(self, fn: Callable[[], None]) -> Callable[[], None]:
        """Wrap a timer/thread callback so failures are recorded instead of lost"""
        def run():
            try:
                fn()
            except Exception as e:
                handle_error(e, "turn_controller", getattr(fn, "__name__", "callback"), ErrorSeverity.HIGH)
        return run


class _TurnReply:
    """Text and speech progress of the reply being produced"""

    def __init__(self, chunker: SpeechChunker):
        self.chunker = chunker
        self.text = ""
        self.received_delta = False
