import os
import sys

import pytest

sys.path.append(os.path.join(os.path.dirname(__file__), '..', 'src'))

from voicechat.voice_commands import (PAUSE, RESUME, STOP, TranscriptContext, classify, extract_name,
                                      get_voice_command, is_short_ack, is_speakable, looks_like_echo,
                                      looks_like_user_interrupt, normalize, strip_name_intro)


def test_normalize():
    assert normalize("  Hello,   World!! ") == "hello world"
    assert normalize("It's 5 o'clock") == "it s 5 o clock"
    assert normalize(None) == ""


@pytest.mark.parametrize("text, expected", [
    ("stop", STOP),
    ("Okay, STOP talking.", STOP),
    ("cancel that", STOP),
    ("please shut up", STOP),
    ("pause", PAUSE),
    ("could you pause for a second", PAUSE),
    ("resume", RESUME),
    ("continue please", RESUME),
    ("start again", RESUME),
    ("what's the weather", None),
    ("", None),
])
def test_voice_commands(text, expected):
    assert get_voice_command(text) == expected


def test_stop_wins_over_pause_and_resume():
    assert get_voice_command("pause no stop continue") == STOP


def test_last_of_pause_and_resume_wins():
    assert get_voice_command("pause, no, continue") == RESUME
    assert get_voice_command("continue, actually pause") == PAUSE


def test_commands_match_whole_words_only():
    assert get_voice_command("the bus stopped") is None
    assert get_voice_command("restart the timer") is None


def test_echo_requires_active_synthesis():
    ai = "The forecast says light rain this afternoon."
    assert looks_like_echo("light rain this afternoon", ai, True)
    assert not looks_like_echo("light rain this afternoon", ai, False)


def test_echo_rejects_novel_words():
    ai = "The forecast says light rain this afternoon."
    assert not looks_like_echo("light rain this afternoon really", ai, True)
    assert not looks_like_echo("what about tomorrow", ai, True)


def test_echo_by_word_overlap():
    ai = "Paris has many museums and lovely parks to visit."
    assert looks_like_echo("lovely parks many museums", ai, True)
    # Too few words to be sure
    assert not looks_like_echo("parks many", ai, True)


def test_short_acks_and_interrupt_starters():
    assert is_short_ack("Okay.")
    assert not is_short_ack("okay then")
    assert looks_like_user_interrupt("yeah")
    assert looks_like_user_interrupt("wait, that's wrong")
    assert looks_like_user_interrupt("hold on a second")
    assert not looks_like_user_interrupt("tell me more about it")
    assert not looks_like_user_interrupt("")


def test_classify_order():
    ctx = TranscriptContext(ai_speech="Here is a long story about dragons.", synth_active=True)

    assert classify("stop the story", ctx).command == STOP
    assert classify("long story about dragons", ctx).kind == "echo"

    result = classify("wait a moment", ctx)
    assert result.kind == "utterance"
    assert result.is_interrupt
    assert not result.is_ack

    assert classify("ok", ctx).is_ack


def test_classify_flags_interrupt_on_echo():
    ctx = TranscriptContext(ai_speech="But the story goes on and on.", synth_active=True)

    result = classify("but the story goes on", ctx)
    assert result.kind == "echo"
    assert result.is_interrupt

    assert classify("but the story goes on", TranscriptContext("But the story goes on.", False)).kind == "utterance"


@pytest.mark.parametrize("text, expected", [
    ("My name is alex", "Alex"),
    ("my name is Mary Jane.", "Mary Jane"),
    ("Call me sam please", "Sam"),
    ("I'm sam, what's the time?", "Sam"),
    ("I am o'neil", "O'neil"),
    ("my name is alex what's the weather like", "Alex"),
    ("call me mary jane watson smith", "Mary Jane Watson"),
    ("I am what", ""),
    ("what's the time", ""),
    ("", ""),
])
def test_extract_name(text, expected):
    assert extract_name(text) == expected


def test_strip_name_intro():
    assert strip_name_intro("My name is Alex.") == ""
    assert strip_name_intro("I'm sam, what's the time?") == "what's the time?"
    assert strip_name_intro("call me Jo! tell me a joke") == "tell me a joke"
    assert strip_name_intro("what's the time") == "what's the time"
    assert strip_name_intro("my name is alex what's the weather like") == "what's the weather like"
    assert strip_name_intro("Call me sam please") == ""


def test_is_speakable():
    assert is_speakable("Okay…")
    assert is_speakable("Hi.")
    assert not is_speakable("")
    assert not is_speakable(" ... ")
    assert not is_speakable("dot dot dot")
