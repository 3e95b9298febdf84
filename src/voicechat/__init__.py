"""
VoiceChat - Hands-free voice chat with hosted LLMs

A small proxy that keeps the NVIDIA credential server-side and relays chat
completions, plus a turn-taking voice loop with barge-in and voice commands.
"""

__version__ = "1.0.0"
__author__ = "VoiceChat Team"

from .cli import main

__all__ = ["main"]
