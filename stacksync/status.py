#!/usr/bin/env python3

import logging
from typing import List

import stacksync.remote_index
from stacksync.bindings import BindingStore
from stacksync.remote_index import RemoteIndex
from stacksync.session import Session
from stacksync.stack import Commit, Stack


def describe_commit(c: Commit, index: RemoteIndex, bindings: BindingStore) -> str:
    line = "{} {}".format(c.oid[:8], c.title)
    if c.identity is None:
        return line + "\n    not submitted"
    pr = index.get(c.identity)
    if pr is None:
        return line + "\n    no pull request found for Stack-Id {}".format(c.identity)
    line += "\n    {}".format(stacksync.remote_index.describe(pr))
    if pr.is_open:
        if pr.content_hash != c.content_hash:
            line += ", differs from local commit"
        elif not pr.based_on_tip:
            line += ", behind its base"
        if pr.labels:
            line += ", labels: {}".format(", ".join(sorted(pr.labels)))
    ref = bindings.get(c.identity)
    if ref is not None:
        line += "\n    bound to {}".format(ref)
    line += "\n    {}".format(pr.url)
    return line


def render(stack: Stack, index: RemoteIndex, bindings: BindingStore) -> str:
    if not len(stack):
        return "No commits between {} and HEAD.".format(stack.trunk)
    # Newest first, like git log
    lines: List[str] = [
        describe_commit(c, index, bindings) for c in reversed(stack.commits)
    ]
    return "\n".join(lines)


def main(*, session: Session) -> str:
    stack = session.read_stack()
    index = session.load_index(stack)
    r = render(stack, index, session.bindings)
    logging.debug("Status of {} commits".format(len(stack)))
    print(r)
    return r
