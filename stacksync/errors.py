#!/usr/bin/env python3

from typing import Optional

from stacksync.types import CommitIdentity, GitHubNumber


class StackSyncError(RuntimeError):
    """
    Base class of every error stacksync reports to the user.  Errors
    that concern a particular commit or pull request carry its identity
    and number so the message can name them.
    """

    identity: Optional[CommitIdentity]
    number: Optional[GitHubNumber]

    def __init__(
        self,
        msg: str,
        *,
        identity: Optional[CommitIdentity] = None,
        number: Optional[GitHubNumber] = None,
    ) -> None:
        super().__init__(msg)
        self.msg = msg
        self.identity = identity
        self.number = number

    def __str__(self) -> str:
        where = []
        if self.number is not None:
            where.append("#{}".format(self.number))
        if self.identity is not None:
            where.append("Stack-Id {}".format(self.identity))
        if where:
            return "{} ({})".format(self.msg, ", ".join(where))
        return self.msg


# Bad range, ambiguous selection: reported immediately, nothing executed.
class InputError(StackSyncError):
    pass


class InvalidRangeError(InputError):
    pass


class AmbiguousRangeError(InputError):
    pass


class NotARepositoryError(InputError):
    pass


class InvalidBaseError(InputError):
    pass


# The remote changed underneath us (closed, merged, deleted); the user
# has to re-sync, we never overwrite it.
class StaleStateError(StackSyncError):
    pass


class TransientRemoteError(StackSyncError):
    # Seconds the host asked us to wait before retrying, if it said so
    retry_after: Optional[float]

    def __init__(
        self,
        msg: str,
        *,
        retry_after: Optional[float] = None,
        identity: Optional[CommitIdentity] = None,
        number: Optional[GitHubNumber] = None,
    ) -> None:
        super().__init__(msg, identity=identity, number=number)
        self.retry_after = retry_after


# The pull request index could not be loaded; aborts the whole command.
class RemoteUnavailableError(StackSyncError):
    pass


# Non-transient rejection by the host (permissions, validation, name
# collisions).
class RemoteError(StackSyncError):
    pass


# Merge rejected or push rejected due to divergence.  Never auto-resolved.
class ConflictError(StackSyncError):
    pass


# The local stack is not in a state we can reason about.  Fatal, raised
# before any remote mutation.
class InvariantViolation(StackSyncError):
    pass


class DuplicateIdentityError(InvariantViolation):
    pass


class NonLinearStackError(InvariantViolation):
    pass
