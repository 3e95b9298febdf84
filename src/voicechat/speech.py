"""
VoiceChat Speech I/O Adapter

Wraps a platform speech-recognition backend into interim/final transcript
callbacks, picks a synthesis voice, and serializes synthesis through a single
worker queue whose pending work can be discarded in one call.
"""
import queue
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Protocol, Sequence

from . import config as CFG
from .logging_utils import setup_logger
from .voice_commands import is_speakable

logger = setup_logger("voicechat.speech", "speech.log")

VOICES_TIMEOUT = 0.6  # seconds
PYTTSX3_RATE_MULTIPLIER = 180  # words per minute at rate 1.0

FEMALE_VOICE_HINTS = (
    "female", "woman", "zira", "samantha", "victoria", "karen", "moira", "tessa", "serena",
    "ava", "joanna", "kimberly", "susan", "amy", "emma", "olivia", "mia", "sara",
)


# ---- Recognition ----

@dataclass
class RecognitionResult:
    transcript: str
    is_final: bool = False
    confidence: Optional[float] = None


class RecognitionListener(Protocol):
    def on_start(self) -> None: ...
    def on_end(self) -> None: ...
    def on_error(self, error: Any) -> None: ...
    def on_results(self, results: Sequence[RecognitionResult], result_index: int) -> None: ...


class RecognitionBackend(Protocol):
    lang: str
    continuous: bool
    listener: Optional[RecognitionListener]

    def start(self) -> None: ...
    def stop(self) -> None: ...


def _call(callback: Optional[Callable], *args) -> None:
    if callback is not None:
        callback(*args)


class SpeechRecognitionAdapter:
    """Turns backend result batches into interim and final transcript callbacks"""

    def __init__(self, backend: RecognitionBackend, lang: str = "en-US", continuous: bool = False,
                 on_start: Optional[Callable[[], None]] = None,
                 on_end: Optional[Callable[[], None]] = None,
                 on_error: Optional[Callable[[Any], None]] = None,
                 on_interim: Optional[Callable[[str], None]] = None,
                 on_final: Optional[Callable[[str, Optional[float]], None]] = None):
        self.backend = backend
        self._on_start = on_start
        self._on_end = on_end
        self._on_error = on_error
        self._on_interim = on_interim
        self._on_final = on_final

        backend.lang = lang
        backend.continuous = continuous
        backend.listener = self

    @property
    def continuous(self) -> bool:
        return bool(self.backend.continuous)

    @continuous.setter
    def continuous(self, value: bool) -> None:
        self.backend.continuous = bool(value)

    def start(self) -> bool:
        """Start the backend; False when it refuses (e.g. already running)"""
        try:
            self.backend.start()
            return True
        except Exception as e:
            logger.debug(f"Recognition start refused: {e}")
            return False

    def stop(self) -> None:
        try:
            self.backend.stop()
        except Exception as e:
            logger.debug(f"Recognition stop failed: {e}")

    # Listener interface

    def on_start(self) -> None:
        _call(self._on_start)

    def on_end(self) -> None:
        _call(self._on_end)

    def on_error(self, error: Any) -> None:
        _call(self._on_error, error)

    def on_results(self, results: Sequence[RecognitionResult], result_index: int) -> None:
        self.process_results(results, result_index)

    def process_results(self, results: Sequence[RecognitionResult], result_index: int = 0) -> None:
        """Concatenate results from result_index on, split into interim and final text"""
        try:
            interim = ""
            final_text = ""
            last_final_confidence: Optional[float] = None

            for result in list(results)[max(0, result_index):]:
                transcript = result.transcript or ""
                if result.is_final:
                    final_text += transcript
                    conf = result.confidence
                    last_final_confidence = conf if isinstance(conf, (int, float)) else None
                else:
                    interim += transcript

            interim = interim.strip()
            final_text = final_text.strip()
            if interim:
                _call(self._on_interim, interim)
            if final_text:
                _call(self._on_final, final_text, last_final_confidence)
        except Exception as e:
            logger.warning(f"Recognition result handling failed: {e}")
            _call(self._on_error, e)


def is_speech_recognition_supported(backend: Any) -> bool:
    return backend is not None and callable(getattr(backend, "start", None)) \
        and callable(getattr(backend, "stop", None))


def create_speech_recognition(backend: Any, lang: Optional[str] = None, continuous: bool = False,
                              **callbacks) -> Optional[SpeechRecognitionAdapter]:
    """Adapter around `backend`, or None when recognition is unavailable"""
    if not is_speech_recognition_supported(backend):
        logger.warning("Speech recognition is not supported by this backend")
        return None
    return SpeechRecognitionAdapter(backend, lang=lang or CFG.get_voice_language(),
                                    continuous=continuous, **callbacks)


# ---- Voices ----

@dataclass
class Voice:
    name: str
    lang: str = ""
    voice_uri: str = ""
    default: bool = False

    def search_text(self) -> str:
        return f"{self.name or ''} {self.voice_uri or ''}".lower()


def pick_preferred_voice(voices: Optional[Sequence[Voice]], lang: str = "en-US",
                         gender: str = "female") -> Optional[Voice]:
    """Same-language voice, Google voices first, female hint when asked, else default"""
    pool = list(voices or [])
    if not pool:
        return None

    prefix = (lang or "").lower()[:2]
    same_lang = [v for v in pool if (v.lang or "").lower().startswith(prefix)]
    pool = same_lang or pool

    google = [v for v in pool if "google" in v.search_text()]
    pool = google or pool

    if gender == "female":
        for v in pool:
            text = v.search_text()
            if any(hint in text for hint in FEMALE_VOICE_HINTS):
                return v

    for v in pool:
        if v.default:
            return v
    return pool[0]


def get_voices_with_timeout(backend, timeout: float = VOICES_TIMEOUT, poll_interval: float = 0.05,
                            sleep: Callable[[float], None] = time.sleep) -> List[Voice]:
    """Poll backend.get_voices() until it returns something or the timeout passes"""
    deadline = time.monotonic() + timeout
    while True:
        try:
            voices = list(backend.get_voices() or [])
        except Exception as e:
            logger.debug(f"Voice listing failed: {e}")
            return []
        if voices or time.monotonic() >= deadline:
            return voices
        sleep(poll_interval)


# ---- Synthesis ----

class SynthesisBackend(Protocol):
    def get_voices(self) -> List[Voice]: ...
    def speak(self, text: str, voice: Optional[Voice], rate: float, pitch: float, volume: float) -> bool: ...
    def cancel(self) -> None: ...
    def pause(self) -> None: ...
    def resume(self) -> None: ...
    def is_speaking(self) -> bool: ...


class SpeechJob:
    """Queued utterance with completion helpers"""

    def __init__(self, text: str, generation: int, is_last: bool = False):
        self.text = text
        self.generation = generation
        self.is_last = is_last
        self.done_event = threading.Event()
        self.success: bool = False
        self.error: Optional[Exception] = None

    def set_result(self, success: bool, error: Optional[Exception] = None) -> None:
        if self.done_event.is_set():
            return
        self.success = success
        self.error = error
        self.done_event.set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """True if spoken, False if discarded, failed or still pending at timeout"""
        if not self.done_event.wait(timeout):
            return False
        return self.success

    def done(self) -> bool:
        return self.done_event.is_set()


class SpeechSynthesisQueue:
    """Plays utterances one at a time, strictly in order.

    cancel() bumps the generation: every job queued under an older generation
    resolves False without being spoken.
    """

    def __init__(self, backend: SynthesisBackend, lang: Optional[str] = None, gender: Optional[str] = None,
                 rate: Optional[float] = None, pitch: Optional[float] = None, volume: Optional[float] = None,
                 on_job_start: Optional[Callable[[SpeechJob], None]] = None,
                 on_job_end: Optional[Callable[[SpeechJob, bool], None]] = None):
        self.backend = backend
        self.lang = lang or CFG.get_voice_language()
        self.gender = gender or CFG.get_voice_gender()
        self.rate = rate if rate is not None else CFG.get_voice_rate()
        self.pitch = pitch if pitch is not None else CFG.get_voice_pitch()
        self.volume = volume if volume is not None else CFG.get_voice_volume()
        self.on_job_start = on_job_start
        self.on_job_end = on_job_end

        self._queue: "queue.Queue[Optional[SpeechJob]]" = queue.Queue()
        self._lock = threading.Lock()
        self._generation = 0
        self._live_jobs = 0  # jobs of the current generation not finished yet
        self._current: Optional[SpeechJob] = None
        self._paused = False
        self._idle = threading.Event()
        self._idle.set()
        self._shutdown = threading.Event()
        self._voice: Optional[Voice] = None
        self._voice_resolved = False

        self._worker = threading.Thread(target=self._worker_loop, name="SpeechWorker", daemon=True)
        self._worker.start()

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    def enqueue(self, text: str, is_last: bool = False) -> SpeechJob:
        clean = ("" if text is None else str(text)).strip()
        with self._lock:
            job = SpeechJob(clean, self._generation, is_last)
            if not is_speakable(clean) or self._shutdown.is_set():
                job.set_result(False)
                return job
            self._live_jobs += 1
            self._idle.clear()
        self._queue.put(job)
        return job

    def cancel(self) -> None:
        """Stop the current utterance and discard everything queued"""
        with self._lock:
            self._generation += 1
            self._live_jobs = 0
            self._paused = False
            current = self._current
            discarded: List[SpeechJob] = []
            while True:
                try:
                    job = self._queue.get_nowait()
                except queue.Empty:
                    break
                self._queue.task_done()
                if job is None:
                    # keep the shutdown sentinel
                    self._queue.put(None)
                    break
                discarded.append(job)
            self._idle.set()

        try:
            self.backend.cancel()
        except Exception as e:
            logger.debug(f"Synthesis cancel failed: {e}")

        if current is not None:
            current.set_result(False)
        for job in discarded:
            job.set_result(False)
        if discarded or current is not None:
            logger.info(f"Speech cancelled ({len(discarded)} queued chunk(s) dropped)")

    def pause(self) -> None:
        with self._lock:
            self._paused = True
        try:
            self.backend.pause()
        except Exception as e:
            logger.debug(f"Synthesis pause failed: {e}")

    def resume(self) -> None:
        with self._lock:
            self._paused = False
        try:
            self.backend.resume()
        except Exception as e:
            logger.debug(f"Synthesis resume failed: {e}")

    @property
    def paused(self) -> bool:
        with self._lock:
            return self._paused

    def is_active(self) -> bool:
        """A current-generation job is playing or waiting"""
        with self._lock:
            return self._live_jobs > 0

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        return self._idle.wait(timeout)

    def shutdown(self, timeout: float = 2.0) -> None:
        if self._shutdown.is_set():
            return
        self._shutdown.set()
        self.cancel()
        self._queue.put(None)
        self._worker.join(timeout=timeout)

    def _resolve_voice(self) -> Optional[Voice]:
        if not self._voice_resolved:
            self._voice_resolved = True
            voices = get_voices_with_timeout(self.backend)
            self._voice = pick_preferred_voice(voices, lang=self.lang, gender=self.gender)
            if self._voice is not None:
                logger.info(f"Using voice '{self._voice.name}' ({self._voice.lang})")
        return self._voice

    def _worker_loop(self) -> None:
        while True:
            try:
                job = self._queue.get(timeout=0.2)
            except queue.Empty:
                if self._shutdown.is_set():
                    break
                continue

            if job is None:
                self._queue.task_done()
                break

            try:
                self._execute_job(job)
            finally:
                self._queue.task_done()

    def _execute_job(self, job: SpeechJob) -> None:
        with self._lock:
            if job.generation != self._generation:
                job.set_result(False)
                return
            self._current = job

        self._notify(self.on_job_start, job)
        success = False
        error: Optional[Exception] = None
        try:
            success = bool(self.backend.speak(job.text, self._resolve_voice(), self.rate, self.pitch, self.volume))
        except Exception as e:
            error = e
            logger.error(f"Speech synthesis failed: {e}")

        with self._lock:
            self._current = None
            stale = job.generation != self._generation
            if not stale:
                self._live_jobs = max(0, self._live_jobs - 1)
                if self._live_jobs == 0:
                    self._idle.set()

        job.set_result(success and not stale, error)
        self._notify(self.on_job_end, job, job.success)

    @staticmethod
    def _notify(hook: Optional[Callable], *args) -> None:
        if hook is None:
            return
        try:
            hook(*args)
        except Exception as e:
            logger.warning(f"Speech hook error: {e}")


# ---- Backends ----

def _voice_lang(raw_voice: Any) -> str:
    languages = getattr(raw_voice, "languages", None) or []
    for lang in languages:
        if isinstance(lang, bytes):
            lang = lang.decode("utf-8", errors="ignore")
        lang = "".join(ch for ch in str(lang) if ch.isalnum() or ch in "-_")
        if lang:
            return lang.replace("_", "-")
    return ""


class Pyttsx3Synthesizer:
    """pyttsx3 synthesis backend. The engine is created lazily on the speaking thread."""

    def __init__(self):
        self._engine = None
        self._speaking = threading.Event()
        self._lock = threading.Lock()

    def _get_engine(self):
        with self._lock:
            if self._engine is None:
                import pyttsx3
                self._engine = pyttsx3.init()
            return self._engine

    def get_voices(self) -> List[Voice]:
        engine = self._get_engine()
        voices = []
        for idx, raw in enumerate(engine.getProperty("voices") or []):
            voices.append(Voice(name=getattr(raw, "name", "") or "", lang=_voice_lang(raw),
                                voice_uri=getattr(raw, "id", "") or "", default=idx == 0))
        return voices

    def speak(self, text: str, voice: Optional[Voice], rate: float, pitch: float, volume: float) -> bool:
        engine = self._get_engine()
        if voice is not None and voice.voice_uri:
            engine.setProperty("voice", voice.voice_uri)
        engine.setProperty("rate", int(rate * PYTTSX3_RATE_MULTIPLIER))
        engine.setProperty("volume", max(0.0, min(1.0, volume)))
        # pyttsx3 has no pitch control
        self._speaking.set()
        try:
            engine.say(text)
            engine.runAndWait()
        finally:
            self._speaking.clear()
        return True

    def cancel(self) -> None:
        if self._engine is not None and self._speaking.is_set():
            self._engine.stop()

    def pause(self) -> None:
        logger.debug("pyttsx3 cannot pause; ignoring")

    def resume(self) -> None:
        logger.debug("pyttsx3 cannot resume; ignoring")

    def is_speaking(self) -> bool:
        return self._speaking.is_set()


class ConsoleRecognizer:
    """Recognition backend fed with typed lines; each line is a final transcript.

    Typed input is delivered whether or not recognition is running.
    """

    def __init__(self):
        self.lang = "en-US"
        self.continuous = True
        self.listener: Optional[RecognitionListener] = None
        self._running = False
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        with self._lock:
            if self._running:
                raise RuntimeError("recognition already started")
            self._running = True
        if self.listener is not None:
            self.listener.on_start()

    def stop(self) -> None:
        with self._lock:
            if not self._running:
                return
            self._running = False
        if self.listener is not None:
            self.listener.on_end()

    def feed(self, line: str) -> None:
        text = (line or "").strip()
        if not text or self.listener is None:
            return
        self.listener.on_results([RecognitionResult(text, is_final=True, confidence=1.0)], 0)
