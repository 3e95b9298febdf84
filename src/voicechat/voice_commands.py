"""
Transcript classification for the voice loop.

Pure functions: normalization, voice commands (stop/pause/resume), echo
detection against what the assistant is currently saying, barge-in starters,
and user-name capture from introductions.
"""
import re
from dataclasses import dataclass
from typing import Optional

# Commands
STOP = "stop"
PAUSE = "pause"
RESUME = "resume"

_STOP_RE = re.compile(r"\b(stop|cancel)\b|\bshut\s+up\b")
_PAUSE_RE = re.compile(r"\bpause\b")
_RESUME_RE = re.compile(r"\b(resume|continue|start)\b")

# Echo heuristic
ECHO_MIN_SUBSTRING_CHARS = 10
ECHO_MIN_WORD_CHARS = 3
ECHO_MIN_WORDS = 4
ECHO_OVERLAP_THRESHOLD = 0.85

SHORT_ACKS = frozenset({"ok", "okay", "yeah", "yes", "no", "hmm"})
_INTERRUPT_RE = re.compile(r"\b(wait|hold on|listen|actually|sorry|excuse me|hey|stop|cancel|no|but)\b")

# Name capture
NAME_MAX_CHARS = 40
NAME_MAX_WORDS = 3
_NAME_BODY = r"([a-z][a-z' -]{1,40})"
_NAME_PATTERNS = [
    re.compile(r"\bmy\s+name\s+is\s+" + _NAME_BODY, re.IGNORECASE),
    re.compile(r"\bi\s*am\s+" + _NAME_BODY, re.IGNORECASE),
    re.compile(r"\bi'?m\s+" + _NAME_BODY, re.IGNORECASE),
    re.compile(r"\bcall\s+me\s+" + _NAME_BODY, re.IGNORECASE),
]
_INTRO_PREFIX_RE = re.compile(r"^\s*(?:my\s+name\s+is|i\s*am|i'?m|call\s+me)\s+", re.IGNORECASE)
_NAME_WORD_RE = re.compile(r"[a-z][a-z'-]*", re.IGNORECASE)
_POLITENESS_WORDS = frozenset({"please", "bro", "sir", "ma'am", "mam", "miss", "buddy", "friend"})
# Unpunctuated transcripts run straight from the name into the request
_NAME_STOP_WORDS = frozenset({
    "what", "whats", "how", "hows", "why", "where", "when", "who", "which",
    "can", "could", "would", "will", "tell", "and", "but", "so", "is", "are", "do", "does",
})

_DOTS_ONLY_RE = re.compile(r"^[.\s]+$")
_DOT_WORDS_RE = re.compile(r"^(dot\s*)+$", re.IGNORECASE)


def normalize(text) -> str:
    """Lowercase, punctuation to spaces, whitespace collapsed"""
    s = "" if text is None else str(text)
    s = "".join(ch if ch.isalnum() or ch.isspace() else " " for ch in s.lower())
    return " ".join(s.split())


def get_voice_command(text) -> Optional[str]:
    """Voice command carried anywhere in the phrase, or None.

    Stop always wins. When both pause and resume are present the one said
    last is taken.
    """
    n = normalize(text)
    if not n:
        return None

    if _STOP_RE.search(n):
        return STOP

    pauses = [m.start() for m in _PAUSE_RE.finditer(n)]
    resumes = [m.start() for m in _RESUME_RE.finditer(n)]
    if pauses and resumes:
        return RESUME if resumes[-1] > pauses[-1] else PAUSE
    if pauses:
        return PAUSE
    if resumes:
        return RESUME
    return None


def _content_words(normalized: str):
    return [w for w in normalized.split(" ") if len(w) >= ECHO_MIN_WORD_CHARS]


def looks_like_echo(heard, ai_speech, synth_active: bool) -> bool:
    """Whether `heard` is probably the assistant's own voice picked up by the mic.

    Only possible while synthesis is active. Any novel content word counts as
    a real barge-in.
    """
    if not synth_active:
        return False
    ai = normalize(ai_speech)
    h = normalize(heard)
    if not ai or not h:
        return False

    ai_words = set(_content_words(ai))
    heard_words = _content_words(h)
    novel = [w for w in heard_words if w not in ai_words]

    if h in ai and len(h) >= ECHO_MIN_SUBSTRING_CHARS:
        return not novel

    if not heard_words or not ai_words:
        return False
    overlap = (len(heard_words) - len(novel)) / len(heard_words)
    return overlap >= ECHO_OVERLAP_THRESHOLD and len(heard_words) >= ECHO_MIN_WORDS and not novel


def is_short_ack(text) -> bool:
    return normalize(text) in SHORT_ACKS


def looks_like_user_interrupt(text) -> bool:
    """Short acknowledgement or a common barge-in starter"""
    n = normalize(text)
    if not n:
        return False
    if n in SHORT_ACKS:
        return True
    return bool(_INTERRUPT_RE.search(n))


@dataclass
class TranscriptContext:
    """What the assistant is doing when a transcript arrives"""
    ai_speech: str = ""
    synth_active: bool = False


@dataclass
class Classification:
    kind: str  # "command" | "echo" | "utterance"
    command: Optional[str] = None
    is_interrupt: bool = False
    is_ack: bool = False


def classify(transcript, context: Optional[TranscriptContext] = None) -> Classification:
    """Commands first, then echo, then a regular utterance.

    The interrupt and ack flags are set for echoes too: a barge-in starter
    heard over the assistant counts even when its words overlap the reply.
    """
    ctx = context or TranscriptContext()
    command = get_voice_command(transcript)
    if command:
        return Classification(kind="command", command=command)
    kind = "echo" if looks_like_echo(transcript, ctx.ai_speech, ctx.synth_active) else "utterance"
    return Classification(
        kind=kind,
        is_interrupt=looks_like_user_interrupt(transcript),
        is_ack=is_short_ack(transcript),
    )


def _take_name(body: str):
    """Leading name words of `body` and the offset where the introduction ends"""
    words = []
    end = 0
    for m in _NAME_WORD_RE.finditer(body):
        word = m.group(0)
        if word.lower() in _POLITENESS_WORDS:
            return words, len(body)
        if word.lower().replace("'", "") in _NAME_STOP_WORDS or len(words) >= NAME_MAX_WORDS:
            break
        words.append(word)
        end = m.end()
    return words, end


def extract_name(text) -> str:
    """Name from an introduction ("my name is ...", "call me ..."), title-cased, or ''"""
    s = ("" if text is None else str(text)).strip()
    if not s:
        return ""

    for pattern in _NAME_PATTERNS:
        m = pattern.search(s)
        if not m:
            continue
        words, _ = _take_name(m.group(1))
        name = " ".join(words)
        if not name:
            return ""
        if len(name) > NAME_MAX_CHARS:
            name = name[:NAME_MAX_CHARS].strip()
        return " ".join(w[:1].upper() + w[1:].lower() for w in name.split(" ") if w)
    return ""


def strip_name_intro(text) -> str:
    """Text with a leading self-introduction removed"""
    s = ("" if text is None else str(text)).strip()
    if not s:
        return ""
    prefix = _INTRO_PREFIX_RE.match(s)
    if not prefix:
        return s
    rest = s[prefix.end():]
    body = re.match(_NAME_BODY, rest, re.IGNORECASE)
    if not body:
        return s
    _, end = _take_name(body.group(1))
    return re.sub(r"^\s*[,.!]?\s*", "", rest[end:], count=1).strip()


def is_speakable(text) -> bool:
    """False for empty text and for bare ellipses ("...", "dot dot dot")"""
    s = ("" if text is None else str(text)).strip()
    if not s:
        return False
    return not (_DOTS_ONLY_RE.match(s) or _DOT_WORDS_RE.match(s))
