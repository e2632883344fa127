"""
Canned replies for greetings and small talk, answered without retrieval or LLM calls.
"""
from __future__ import annotations

import random

GREETINGS = (
    "hi",
    "hello",
    "hey",
    "greetings",
    "good morning",
    "good afternoon",
    "good evening",
)

GREETING_RESPONSES = (
    "Hello! I'm here to help you with questions about the documents. What would you like to know?",
    "Hi! How can I assist you today? Feel free to ask me anything about the documents.",
    "Hello! I can help answer questions based on the documents you've provided. What would you like to know?",
    "Hi there! I'm ready to help. What questions do you have about the documents?",
)

SIMPLE_RESPONSES = {
    "how are you": "I'm doing well, thank you! I'm here to help you with questions about the documents. What would you like to know?",
    "how are you doing": "I'm doing great! Ready to help you with any questions about the documents. What can I assist you with?",
    "thanks": "You're welcome! Is there anything else you'd like to know?",
    "thank you": "You're welcome! Feel free to ask if you have more questions.",
    "bye": "Goodbye! Feel free to come back if you have more questions.",
    "goodbye": "Goodbye! Have a great day!",
}


def normalize_message(message: str) -> str:
    return str(message or "").strip().lower()


def is_greeting(message: str) -> bool:
    """Exact greeting, greeting followed by a space and more text, or greeting + '!'."""
    normalized = normalize_message(message)
    return any(
        normalized == greeting
        or normalized.startswith(greeting + " ")
        or normalized == greeting + "!"
        for greeting in GREETINGS
    )


def match_shortcut(message: str, rng: random.Random | None = None) -> str | None:
    """Returns a canned reply for small talk, or None when the message needs the pipeline."""
    if is_greeting(message):
        return (rng or random).choice(GREETING_RESPONSES)
    return SIMPLE_RESPONSES.get(normalize_message(message))
