"""Player name policy shared by the start-run and submit endpoints."""

import os
import re
import threading
from typing import List, Set

from better_profanity import profanity

from .errors import InputError


NAME_RE = re.compile(r'^[a-zA-Z0-9._-]{3,50}$')
_TOKEN_SPLIT_RE = re.compile(r'[._\-]+')

# digits commonly swapped in for letters
_LEET = str.maketrans({"0": "o", "1": "i", "3": "e", "4": "a", "5": "s", "7": "t", "@": "a", "$": "s"})

# the default wordlist has to be loaded before any custom words are added
profanity.load_censor_words()
_extra_words: Set[str] = set()
_extra_lock = threading.Lock()


def _sync_extra_words() -> None:
    # BLOCKED_NAME_WORDS extends the library's list, comma separated
    raw = os.getenv("BLOCKED_NAME_WORDS", "")
    words = {w.strip().lower() for w in raw.split(",") if w.strip()}
    with _extra_lock:
        new = words - _extra_words
        if new:
            profanity.add_censor_words(sorted(new))
            _extra_words.update(new)


def _candidates(name: str) -> List[str]:
    out: List[str] = []
    for token in _TOKEN_SPLIT_RE.split(name.lower()):
        if not token:
            continue
        out.append(token)
        out.append(token.translate(_LEET))
        # trailing digits are common decoration: "shit99"
        stripped = token.rstrip("0123456789")
        if stripped:
            out.append(stripped)
    return out


def is_profane(name: str) -> bool:
    _sync_extra_words()
    candidates = _candidates(name)
    return bool(candidates) and profanity.contains_profanity(" ".join(candidates))


def check_player_name(name) -> str:
    """Return the name unchanged or raise InputError with the client-facing reason."""
    if not isinstance(name, str) or not NAME_RE.match(name):
        raise InputError("Invalid player name format")
    if is_profane(name):
        raise InputError("Player name contains inappropriate content")
    return name
