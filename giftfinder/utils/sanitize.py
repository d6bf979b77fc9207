# giftfinder/utils/sanitize.py
from __future__ import annotations
import re
from typing import Iterable, List

_INJECTION_CUES = [
    "ignore previous instruction",
    "ignore the previous instruction",
    "disregard previous instruction",
    "system prompt",
    "developer message",
    "as an ai",
    "you are chatgpt",
    "act as",
    "do not follow the above",
    "override",
    "reset the system",
    "jailbreak",
]

_WHITESPACE_RE = re.compile(r"\s+")


def collapse_ws(text: str) -> str:
    if not text:
        return ""
    return _WHITESPACE_RE.sub(" ", text).strip()


def strip_injection_cues(text: str, cues: Iterable[str] = _INJECTION_CUES) -> str:
    if not text:
        return ""
    t = text
    for c in cues:
        t = re.sub(re.escape(c), "", t, flags=re.IGNORECASE)
    return t


def sanitize_user_field(text: str, max_chars: int = 200) -> str:
    """
    Form fields (occasion, interests, names) go verbatim into the prompt:
    drop cue phrases, collapse whitespace, truncate.
    """
    t = collapse_ws(strip_injection_cues(text or ""))
    if max_chars and len(t) > max_chars:
        t = t[:max_chars].rstrip()
    return t


def sanitize_list(items: Iterable[str], max_items: int = 20, max_chars: int = 60) -> List[str]:
    out: List[str] = []
    for it in items or []:
        s = sanitize_user_field(str(it), max_chars=max_chars)
        if s and s.lower() not in (x.lower() for x in out):
            out.append(s)
        if len(out) >= max_items:
            break
    return out
