#!/usr/bin/env python3

import re
from typing import List, Sequence, Tuple

# "Key: value", where git also accepts spaces before the colon
TRAILER_RE = re.compile(r"^([A-Za-z0-9_-]+)(\s*:\s*)(.*)$")
# A value folded onto the next line
CONTINUATION_RE = re.compile(r"^\s+\S.*$")

# Lines git itself writes into a trailer block
GIT_TRAILER_PREFIXES = ("Signed-off-by: ", "(cherry picked from commit ")


def parse_message(message: str) -> Tuple[str, str, str]:
    """
    Split a commit message into (subject, body, trailer block), each
    stripped and possibly empty.

    The trailer block is the last paragraph of the message, provided
    a blank line separates it from the subject and git would treat it as
    trailers (see is_trailer_block).
    """
    if not message:
        return "", "", ""

    subject, *rest = message.splitlines()
    start = find_trailer_block_start(rest)
    if start == -1:
        return subject, "\n".join(rest).strip(), ""
    return subject, "\n".join(rest[:start]).strip(), "\n".join(rest[start:]).strip()


def find_trailer_block_start(lines: List[str]) -> int:
    """
    Index into lines (everything after the subject) where the trailer
    block begins, or -1.
    """
    end = len(lines)
    while end > 0 and not lines[end - 1].strip():
        end -= 1
    start = end
    while start > 0 and lines[start - 1].strip():
        start -= 1
    # start == 0 means no paragraph, or one glued to the subject
    if start == 0 or not is_trailer_block(lines[start:end]):
        return -1
    return start


def is_trailer_block(lines: Sequence[str]) -> bool:
    """
    Same rule as git interpret-trailers: every line is a trailer, or git
    wrote one of them and trailers make up at least a quarter.
    """
    trailers = others = 0
    from_git = False
    for line in lines:
        if not line.strip() or CONTINUATION_RE.match(line):
            continue
        if line.startswith(GIT_TRAILER_PREFIXES):
            from_git = True
            trailers += 1
        elif TRAILER_RE.match(line):
            trailers += 1
        else:
            others += 1
    if others == 0:
        return trailers > 0
    return from_git and 3 * trailers >= others


def parse_trailers(message: str) -> List[Tuple[str, str]]:
    """
    Returns the (key, value) pairs of the trailer block of message, in
    order.  Continuation lines are folded into the preceding value.
    """
    _, _, block = parse_message(message)
    r: List[Tuple[str, str]] = []
    for line in block.splitlines():
        if CONTINUATION_RE.match(line) and r:
            key, value = r[-1]
            r[-1] = (key, value + " " + line.strip())
            continue
        m = TRAILER_RE.match(line)
        if m:
            r.append((m.group(1), m.group(3).strip()))
    return r


def get_trailers(message: str, key: str) -> List[str]:
    return [v for k, v in parse_trailers(message) if k.lower() == key.lower()]


def build_message(subject: str, body: str, trailers: Sequence[str]) -> str:
    r = subject
    if body:
        r += "\n\n" + body
    if trailers:
        r += "\n\n" + "\n".join(trailers)
    return r + "\n"


def remove_trailers(message: str, keys: Sequence[str]) -> str:
    """
    Drop every trailer whose key is in keys (case insensitive), leaving
    everything else in the message untouched.
    """
    subject, body, block = parse_message(message)
    lowered = {k.lower() for k in keys}
    kept: List[str] = []
    dropping = False
    for line in block.splitlines():
        if CONTINUATION_RE.match(line):
            if not dropping:
                kept.append(line)
            continue
        m = TRAILER_RE.match(line)
        dropping = bool(m) and m.group(1).lower() in lowered
        if not dropping:
            kept.append(line)
    return build_message(subject, body, kept)


def interpret_trailers(message: str, trailers_to_add: Sequence[str]) -> str:
    """
    Append "Key: value" lines to the trailer block of message, starting
    one if there is none.
    """
    subject, body, existing = parse_message(message)
    lines = existing.splitlines() if existing else []
    lines.extend(trailers_to_add)
    return build_message(subject, body, lines)
