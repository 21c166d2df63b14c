#!/usr/bin/env python3

import re
import uuid
from typing import List, Optional

import stacksync.trailers
from stacksync.errors import InvariantViolation
from stacksync.types import CommitIdentity

# Stable identifier of a commit.  It survives amend and rebase because it
# lives in the message, and it is only ever written by the executor,
# right after the pull request for the commit is created.
IDENTITY_TRAILER = "Stack-Id"

# Informational link to the pull request; never used for matching.
PULL_REQUEST_TRAILER = "Pull-Request"

# Comma separated logins (or #team slugs) requested as reviewers when the
# pull request is created.
REVIEWERS_TRAILER = "Reviewers"

RE_IDENTITY = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


def new_identity() -> CommitIdentity:
    return CommitIdentity(uuid.uuid4().hex)


def search(message: str) -> Optional[CommitIdentity]:
    """
    Returns the identity stamped on a commit message, or None if the
    commit has never been turned into a pull request.
    """
    values = stacksync.trailers.get_trailers(message, IDENTITY_TRAILER)
    if not values:
        return None
    if len(set(values)) > 1:
        raise InvariantViolation(
            "Commit message carries more than one {} trailer ({}); did you "
            "squash two tracked commits together?  Keep only one of them.\n\n"
            "{}".format(IDENTITY_TRAILER, ", ".join(values), message)
        )
    if not RE_IDENTITY.match(values[0]):
        raise InvariantViolation(
            "Malformed {} trailer: {!r}".format(IDENTITY_TRAILER, values[0])
        )
    return CommitIdentity(values[0])


def stamp(message: str, identity: CommitIdentity, pr_url: Optional[str]) -> str:
    trailers = ["{}: {}".format(IDENTITY_TRAILER, identity)]
    if pr_url is not None:
        trailers.append("{}: {}".format(PULL_REQUEST_TRAILER, pr_url))
    return stacksync.trailers.interpret_trailers(strip(message), trailers)


def strip(message: str) -> str:
    """
    The commit message without any of the trailers we manage; this is
    what gets shown on the pull request.
    """
    return stacksync.trailers.remove_trailers(
        message, [IDENTITY_TRAILER, PULL_REQUEST_TRAILER]
    )


def reviewers(message: str) -> List[str]:
    r: List[str] = []
    for value in stacksync.trailers.get_trailers(message, REVIEWERS_TRAILER):
        r.extend(name.strip() for name in value.split(",") if name.strip())
    return r


def head_branch(prefix: str, username: str, identity: CommitIdentity) -> str:
    return "{}{}/{}".format(prefix, username, identity)


def identity_of_branch(
    prefix: str, username: str, branch: str
) -> Optional[CommitIdentity]:
    own = "{}{}/".format(prefix, username)
    if not branch.startswith(own):
        return None
    rest = branch[len(own) :]
    if not RE_IDENTITY.match(rest):
        return None
    return CommitIdentity(rest)
