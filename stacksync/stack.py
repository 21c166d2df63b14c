#!/usr/bin/env python3

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Tuple

import stacksync.identity
from stacksync.errors import (
    DuplicateIdentityError,
    InvalidRangeError,
    NonLinearStackError,
)
from stacksync.git import CommitHeader, GitRepository
from stacksync.types import CommitIdentity, ContentHash, GitCommitHash


@dataclass
class Commit:
    """
    A local commit of the stack.  Recomputed from the repository on
    every invocation.
    """

    # None if the commit has never been turned into a pull request;
    # the executor mints one when it creates the pull request
    identity: Optional[CommitIdentity]

    # Patch id of the commit's diff against its parent
    content_hash: ContentHash

    title: str

    # Commit message minus the subject line and our own trailers; this
    # is the pull request body
    body: str

    # 0-based, bottom (oldest) first
    position: int

    # Identity of the commit below this one, or None if it is untracked
    # or this commit sits directly on the stack root
    parent_identity: Optional[CommitIdentity]

    header: CommitHeader

    @property
    def oid(self) -> GitCommitHash:
        return self.header.commit_id

    @property
    def parent_oid(self) -> GitCommitHash:
        return self.header.parents[0]

    @property
    def tracked(self) -> bool:
        return self.identity is not None

    @property
    def message(self) -> str:
        return self.header.commit_msg

    def reviewers(self) -> List[str]:
        return stacksync.identity.reviewers(self.message)

    def describe(self) -> str:
        return "{} {}".format(self.oid[:8], self.title)


@dataclass
class Stack:
    # The commit the stack sits on (exclusive)
    root: GitCommitHash

    # Name of the branch the stack is reviewed and landed against
    trunk: str

    commits: List[Commit] = field(default_factory=list)

    def __iter__(self) -> Iterator[Commit]:
        return iter(self.commits)

    def __len__(self) -> int:
        return len(self.commits)

    def __getitem__(self, i: int) -> Commit:
        return self.commits[i]

    def by_identity(self, identity: CommitIdentity) -> Optional[Commit]:
        for c in self.commits:
            if c.identity == identity:
                return c
        return None

    def by_oid(self, oid: GitCommitHash) -> Optional[Commit]:
        for c in self.commits:
            if c.oid == oid:
                return c
        return None

    def identities(self) -> List[CommitIdentity]:
        return [c.identity for c in self.commits if c.identity is not None]

    def headers(self) -> List[CommitHeader]:
        return [c.header for c in self.commits]


def read_stack(
    repo: GitRepository,
    base: str,
    head: str = "HEAD",
    *,
    trunk: str,
) -> Stack:
    """
    Read the commits in base..head into a Stack, oldest first.  This
    does not mutate anything; untracked commits are just marked as such.

    Raises:
        InvalidRangeError: base is not an ancestor of head, or head is
            not the current HEAD
        NonLinearStackError: a merge commit, or a gap in the ancestry
        DuplicateIdentityError: two commits carry the same Stack-Id
    """
    base_oid = repo.resolve(base)
    head_oid = repo.resolve(head)

    if head_oid != repo.current_head():
        raise InvalidRangeError(
            "The stack must end at HEAD, but {} is not checked out".format(head)
        )
    if not repo.is_ancestor(base_oid, head_oid):
        raise InvalidRangeError(
            "{} is not an ancestor of {}; is your branch based on {}?".format(
                base, head, trunk
            )
        )

    headers = repo.commits_in_range(base_oid, head_oid)
    stack = Stack(root=base_oid, trunk=trunk)
    seen: Dict[CommitIdentity, CommitHeader] = {}
    prev_oid = base_oid
    prev_identity: Optional[CommitIdentity] = None

    for i, h in enumerate(headers):
        if len(h.parents) != 1:
            raise NonLinearStackError(
                "{} {} has {} parents; stacks must be linear (rebase away "
                "merge commits first)".format(h.commit_id[:8], h.title, len(h.parents))
            )
        if h.parents[0] != prev_oid:
            raise NonLinearStackError(
                "{} {} does not sit on top of {}; the range is not a single "
                "line of commits".format(h.commit_id[:8], h.title, prev_oid[:8])
            )

        identity = stacksync.identity.search(h.commit_msg)
        if identity is not None:
            if identity in seen:
                raise DuplicateIdentityError(
                    "{} and {} carry the same Stack-Id; one of them was probably "
                    "copied with cherry-pick.  Remove the trailer from the copy.".format(
                        seen[identity].commit_id[:8], h.commit_id[:8]
                    ),
                    identity=identity,
                )
            seen[identity] = h

        _, body = split_title(stacksync.identity.strip(h.commit_msg))
        stack.commits.append(
            Commit(
                identity=identity,
                content_hash=repo.content_hash(h.parents[0], h.commit_id),
                title=h.title,
                body=body,
                position=i,
                parent_identity=prev_identity,
                header=h,
            )
        )
        prev_oid = h.commit_id
        prev_identity = identity

    logging.debug(
        "Read stack of {} commits ({} tracked) on {}".format(
            len(stack), len(seen), base_oid[:8]
        )
    )
    return stack


def split_title(message: str) -> Tuple[str, str]:
    title, _, body = message.partition("\n")
    return title, body.strip()
