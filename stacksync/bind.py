#!/usr/bin/env python3

import logging

from stacksync.bindings import STACKED, BaseRef
from stacksync.errors import InputError, InvalidBaseError
from stacksync.git import is_revision
from stacksync.session import Session


def main(*, session: Session, rev: str, base: str) -> BaseRef:
    """
    Bind the commit rev to base, which is "stacked" (follow whatever is
    below it in the stack), a branch of the remote, or another commit of
    the stack.  Nothing is sent to GitHub; the next sync retargets the
    pull request.
    """
    stack = session.read_stack()
    c = session.commit_of(stack, rev)
    if c.identity is None:
        raise InputError(
            "{} has no pull request yet; choose its base with "
            "'stacksync sync --base' instead".format(c.describe())
        )

    prefix = session.remote_name + "/"
    branch = base[len(prefix):] if base.startswith(prefix) else base
    if base == STACKED:
        ref = BaseRef.stacked()
    elif not is_revision(branch) and session.repo.remote_branch(branch) is not None:
        ref = BaseRef.branch(branch)
    else:
        t = session.commit_of(stack, base)
        if t.position >= c.position:
            raise InvalidBaseError(
                "Invalid base {}: it is not below {} in the stack".format(base, c.describe()),
                identity=c.identity,
            )
        if t.identity is None:
            raise InvalidBaseError(
                "Invalid base {}: {} has no pull request yet; sync it first".format(
                    base, t.describe()
                ),
                identity=c.identity,
            )
        ref = BaseRef.commit(t.identity)

    session.bindings.set(c.identity, ref)
    session.save()
    logging.info(
        "Bound {} to {}; run stacksync sync to update its pull request".format(
            c.describe(), ref
        )
    )
    return ref
