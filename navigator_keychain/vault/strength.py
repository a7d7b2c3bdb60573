"""
Password strength heuristic (0-5).

Additive score over length and character classes, with penalties for
runs of a repeated character and single-class passwords. Feedback only,
not a security boundary; callers enforce their own minimum.
"""
import re

MIN_SCORE = 0
MAX_SCORE = 5

_UPPER = re.compile(r"[A-Z]")
_LOWER = re.compile(r"[a-z]")
_DIGIT = re.compile(r"[0-9]")
_SYMBOL = re.compile(r"[^A-Za-z0-9]")
_REPEATED = re.compile(r"(.)\1{2,}", re.DOTALL)
_LETTERS_ONLY = re.compile(r"^[A-Za-z]+$")
_DIGITS_ONLY = re.compile(r"^[0-9]+$")

LABELS = {
    0: "very weak",
    1: "weak",
    2: "fair",
    3: "good",
    4: "strong",
    5: "very strong",
}


def score(password: str) -> int:
    """Score a password between 0 and 5.

    Args:
        password: Any string; the empty string scores 0.

    Returns:
        Clamped integer score.
    """
    strength = 0
    if len(password) >= 12:
        strength += 2
    elif len(password) >= 8:
        strength += 1

    for pattern in (_UPPER, _LOWER, _DIGIT, _SYMBOL):
        if pattern.search(password):
            strength += 1

    if _REPEATED.search(password):
        strength -= 1
    if _LETTERS_ONLY.match(password):
        strength -= 1
    if _DIGITS_ONLY.match(password):
        strength -= 2

    return max(MIN_SCORE, min(MAX_SCORE, strength))


def label(value: int) -> str:
    return LABELS[max(MIN_SCORE, min(MAX_SCORE, value))]
