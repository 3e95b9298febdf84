#!/usr/bin/env python3
"""
VoiceChat Conversation Manager
Holds the chat history sent to the model and the voice loop's controller state
"""
import re
import threading
import time
from enum import Enum
from typing import Callable, Dict, List, Optional

from . import config as CFG
from .logging_utils import setup_logger

logger = setup_logger("voicechat.conversation_manager", "voicechat.log")

NO_RESPONSE = "(No response)"
NAME_SENTENCE = "The user's name is {name}. Use it naturally sometimes, especially when greeting or confirming."
_NAME_SENTENCE_RE = re.compile(
    r"\n?\s*The user's name is .*?\.\s*Use it naturally sometimes, especially when greeting or confirming\.\s*",
    re.IGNORECASE,
)

Turn = Dict[str, str]


class ConversationState(Enum):
    """Turn controller states"""
    IDLE = "idle"
    LISTENING = "listening"
    THINKING = "thinking"
    SPEAKING = "speaking"


class ConversationManager:
    """Bounded chat history with a leading system turn"""

    def __init__(self, system_prompt: Optional[str] = None, max_turns: Optional[int] = None):
        """
        Args:
            system_prompt: content of the system turn
            max_turns: user/assistant exchanges kept after the system turn
        """
        self.base_prompt = system_prompt if system_prompt is not None else CFG.get_system_prompt()
        self.max_turns = max(1, max_turns if max_turns is not None else CFG.get_max_turns())
        self.lock = threading.RLock()
        self._messages: List[Turn] = [{"role": "system", "content": self.base_prompt}]
        self._user_name = ""
        self.turn_count = 0

    def messages(self) -> List[Turn]:
        """Copy of the history, system turn first"""
        with self.lock:
            return [dict(m) for m in self._messages]

    @property
    def system_prompt(self) -> str:
        with self.lock:
            return self._messages[0]["content"]

    @property
    def user_name(self) -> str:
        with self.lock:
            return self._user_name

    def add_user_turn(self, text: str) -> None:
        with self.lock:
            self._messages.append({"role": "user", "content": text})
            self.turn_count += 1
            self._trim()
            logger.debug(f"User turn added ({len(self._messages) - 1} non-system turns kept)")

    def add_assistant_turn(self, text: str) -> None:
        with self.lock:
            self._messages.append({"role": "assistant", "content": (text or "").strip() or NO_RESPONSE})

    def _trim(self) -> None:
        keep = self.max_turns * 2
        tail = self._messages[1:]
        if len(tail) > keep:
            self._messages = [self._messages[0]] + tail[-keep:]

    def remember_user_name(self, name: str) -> bool:
        """Rewrite the system turn so it carries the user's name"""
        clean = (name or "").strip()
        if not clean:
            return False
        with self.lock:
            self._user_name = clean
            base = _NAME_SENTENCE_RE.sub("", self._messages[0]["content"], count=1).strip()
            self._messages[0] = {
                "role": "system",
                "content": f"{base}\n\n{NAME_SENTENCE.format(name=clean)}",
            }
        logger.info(f"Remembered user name: {clean}")
        return True

    def reset(self) -> None:
        """Forget the history and the user's name"""
        with self.lock:
            self._messages = [{"role": "system", "content": self.base_prompt}]
            self._user_name = ""
            self.turn_count = 0


class StateTracker:
    """Current controller state plus change callbacks"""

    def __init__(self, initial: ConversationState = ConversationState.IDLE):
        self._state = initial
        self._changed_at = time.time()
        self.lock = threading.Lock()
        self.state_change_callbacks: List[Callable[[ConversationState, ConversationState], None]] = []

    @property
    def state(self) -> ConversationState:
        with self.lock:
            return self._state

    @property
    def changed_at(self) -> float:
        with self.lock:
            return self._changed_at

    def update_state(self, new_state: ConversationState) -> bool:
        """Switch state; False when it was already `new_state`"""
        with self.lock:
            old_state = self._state
            if old_state == new_state:
                return False
            self._state = new_state
            self._changed_at = time.time()

        logger.info(f"State changed: {old_state.value} -> {new_state.value}")
        self._notify_state_change(old_state, new_state)
        return True

    def register_state_callback(self, callback: Callable[[ConversationState, ConversationState], None]):
        """Register callback(old_state, new_state) for state changes"""
        self.state_change_callbacks.append(callback)

    def _notify_state_change(self, old_state: ConversationState, new_state: ConversationState):
        for callback in self.state_change_callbacks:
            try:
                callback(old_state, new_state)
            except Exception as e:
                logger.error(f"State change callback error: {e}")
