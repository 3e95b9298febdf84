import json
import os
import sys
import threading
import time

import pytest
from requests.structures import CaseInsensitiveDict

sys.path.append(os.path.join(os.path.dirname(__file__), '..', 'src'))

from voicechat.cancellation import check
from voicechat.speech import RecognitionResult, SpeechSynthesisQueue, Voice


def wait_for(predicate, timeout=2.0, interval=0.01):
    """Poll until predicate() is truthy; returns its last value"""
    deadline = time.monotonic() + timeout
    while True:
        value = predicate()
        if value or time.monotonic() >= deadline:
            return value
        time.sleep(interval)


class FakeResponse:
    """Enough of requests.Response for the clients under test"""

    def __init__(self, status_code=200, json_data=None, text=None, chunks=None, headers=None):
        self.status_code = status_code
        if text is None and json_data is not None:
            text = json.dumps(json_data)
        self.text = text or ""
        self.chunks = list(chunks or [])
        self.headers = CaseInsensitiveDict(headers or {})
        self.closed = False

    def json(self):
        return json.loads(self.text)

    def iter_content(self, chunk_size=None):
        for chunk in self.chunks:
            if self.closed:
                return
            yield chunk

    def iter_lines(self):
        pending = b""
        for chunk in self.iter_content():
            pending += chunk
            while b"\n" in pending:
                line, pending = pending.split(b"\n", 1)
                yield line.rstrip(b"\r")
        if pending and not self.closed:
            yield pending

    def close(self):
        self.closed = True


class FakeSession:
    """Replays queued outcomes (responses or exceptions) and records calls"""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    def _next(self, method, url, kwargs):
        self.calls.append({"method": method, "url": url, **kwargs})
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    def post(self, url, **kwargs):
        return self._next("POST", url, kwargs)

    def get(self, url, **kwargs):
        return self._next("GET", url, kwargs)


class FakeSynthesizer:
    """Synthesis backend that records utterances; optionally blocks until released or cancelled"""

    def __init__(self, block=False, voices=None):
        self.block = block
        self.voices = voices if voices is not None else [Voice("Google US English", "en-US", "google-us", True)]
        self.started = []
        self.spoken = []
        self.cancel_calls = 0
        self.pause_calls = 0
        self.resume_calls = 0
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()
        self._wake = threading.Event()
        self._cancelled = False
        self._speaking = False

    def get_voices(self):
        return list(self.voices)

    def speak(self, text, voice, rate, pitch, volume):
        with self._lock:
            self.started.append(text)
            self._speaking = True
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.block:
                self._wake.wait(timeout=5.0)
                with self._lock:
                    self._wake.clear()
                    if self._cancelled:
                        self._cancelled = False
                        return False
            self.spoken.append(text)
            return True
        finally:
            with self._lock:
                self._speaking = False
                self.active -= 1

    def release(self):
        """Let the current utterance finish"""
        self._wake.set()

    def cancel(self):
        with self._lock:
            self.cancel_calls += 1
            if self._speaking:
                self._cancelled = True
                self._wake.set()

    def pause(self):
        self.pause_calls += 1

    def resume(self):
        self.resume_calls += 1

    def is_speaking(self):
        return self._speaking


class FakeRecognizer:
    """Recognition backend driven by the test"""

    def __init__(self):
        self.lang = ""
        self.continuous = False
        self.listener = None
        self.running = False
        self.start_calls = 0
        self.stop_calls = 0

    def start(self):
        self.start_calls += 1
        if self.running:
            raise RuntimeError("already started")
        self.running = True
        self.listener.on_start()

    def stop(self):
        self.stop_calls += 1
        if not self.running:
            return
        self.running = False
        self.listener.on_end()

    def error(self, reason="no-speech"):
        self.running = False
        self.listener.on_error(reason)

    def interim(self, text):
        self.listener.on_results([RecognitionResult(text, is_final=False)], 0)

    def final(self, text, confidence=0.9):
        self.listener.on_results([RecognitionResult(text, is_final=True, confidence=confidence)], 0)


class _ManualTimer:
    def __init__(self, when, seq, fn):
        self.when = when
        self.seq = seq
        self.fn = fn
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class ManualScheduler:
    """Deterministic scheduler: timers fire only when advance() is called.

    Spawned work runs inline unless threaded=True.
    """

    def __init__(self, threaded=False):
        self.now = 0.0
        self.threaded = threaded
        self.threads = []
        self._timers = []
        self._seq = 0
        self._lock = threading.Lock()

    def clock(self):
        return self.now

    def call_later(self, delay, fn):
        with self._lock:
            self._seq += 1
            timer = _ManualTimer(self.now + max(0.0, delay), self._seq, fn)
            self._timers.append(timer)
        return timer

    def spawn(self, fn, name=None):
        if not self.threaded:
            fn()
            return None
        thread = threading.Thread(target=fn, daemon=True)
        self.threads.append(thread)
        thread.start()
        return thread

    def advance(self, seconds):
        target = self.now + seconds
        while True:
            with self._lock:
                due = [t for t in self._timers if not t.cancelled and t.when <= target]
                if not due:
                    break
                timer = min(due, key=lambda t: (t.when, t.seq))
                self._timers.remove(timer)
                self.now = max(self.now, timer.when)
            timer.fn()
        self.now = target

    def join(self, timeout=2.0):
        for thread in list(self.threads):
            thread.join(timeout)
        return not any(t.is_alive() for t in self.threads)


class FakeChatClient:
    """Chat client scripted per call.

    replies: one entry per streaming call, each a list of deltas, an
    exception, or a callable(on_delta, cancel_token) returning the full text.
    """

    def __init__(self, replies=None, text="", text_error=None, before_text=None):
        self.replies = list(replies or [])
        self.text = text
        self.text_error = text_error
        self.before_text = before_text
        self.stream_calls = []
        self.text_calls = []
        self.tokens = []

    def generate_text_stream(self, messages, on_delta=None, params=None, cancel_token=None):
        self.stream_calls.append([dict(m) for m in messages])
        self.tokens.append(cancel_token)
        reply = self.replies.pop(0) if self.replies else []
        if isinstance(reply, BaseException):
            raise reply
        if callable(reply):
            return reply(on_delta, cancel_token)
        full = ""
        for delta in reply:
            check(cancel_token)
            full += delta
            on_delta(delta, full)
        return full.strip()

    def generate_text(self, messages, params=None, cancel_token=None):
        self.text_calls.append({"messages": [dict(m) for m in messages], "params": params})
        if self.before_text is not None:
            self.before_text()
        if self.text_error is not None:
            raise self.text_error
        check(cancel_token)
        return self.text


@pytest.fixture
def fake_synth():
    return FakeSynthesizer()


@pytest.fixture
def speech_queue(fake_synth):
    queue = SpeechSynthesisQueue(fake_synth, lang="en-US", gender="female", rate=0.9, pitch=1.03, volume=0.85)
    yield queue
    queue.shutdown()
