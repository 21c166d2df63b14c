#!/usr/bin/env python3

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set

import stacksync.identity
import stacksync.shell
from stacksync.errors import RemoteUnavailableError
from stacksync.git import GitRepository
from stacksync.host import GitHubHost
from stacksync.retry import RetryPolicy
from stacksync.types import CommitIdentity, ContentHash, GitCommitHash, GitHubNumber

OPEN = "OPEN"
MERGED = "MERGED"
CLOSED = "CLOSED"


@dataclass
class PullRequest:
    identity: CommitIdentity
    number: GitHubNumber
    url: str
    head_branch: str
    head_oid: Optional[GitCommitHash]
    base_branch: str
    base_oid: Optional[GitCommitHash]
    title: str
    body: str
    # OPEN, MERGED or CLOSED
    state: str
    labels: Set[str] = field(default_factory=set)
    is_draft: bool = False

    # Patch id of what the pull request shows (base...head); None if we
    # could not compute it, which compares unequal to everything
    content_hash: Optional[ContentHash] = None

    # Whether the current tip of the base branch is contained in the
    # head, i.e. the head does not need to be rebuilt on a newer base
    based_on_tip: bool = True

    @property
    def is_open(self) -> bool:
        return self.state == OPEN

    @property
    def is_merged(self) -> bool:
        return self.state == MERGED

    @property
    def is_closed(self) -> bool:
        return self.state == CLOSED


class RemoteIndex(object):
    """
    Pull requests by identity, as of one point in time.  Built once per
    command and never refreshed, so every decision of a command sees the
    same snapshot.
    """

    _prs: Dict[CommitIdentity, PullRequest]

    def __init__(self, prs: Optional[Iterable[PullRequest]] = None) -> None:
        self._prs = {pr.identity: pr for pr in prs} if prs else {}

    def get(self, identity: Optional[CommitIdentity]) -> Optional[PullRequest]:
        if identity is None:
            return None
        return self._prs.get(identity)

    def __contains__(self, identity: object) -> bool:
        return identity in self._prs

    def __iter__(self) -> Iterator[PullRequest]:
        return iter(sorted(self._prs.values(), key=lambda pr: pr.number))

    def __len__(self) -> int:
        return len(self._prs)

    def with_base(self, branch: str) -> List[PullRequest]:
        return [pr for pr in self if pr.is_open and pr.base_branch == branch]

    @staticmethod
    def load(
        host: GitHubHost,
        repo: GitRepository,
        identities: Iterable[CommitIdentity],
        *,
        branch_prefix: str,
        username: str,
        retry: Optional[RetryPolicy] = None,
    ) -> "RemoteIndex":
        """
        Look up the pull requests of identities with one batched query.

        Raises:
            RemoteUnavailableError: if the lookup failed; there is no
                partial index
        """
        branches = {
            stacksync.identity.head_branch(branch_prefix, username, i): i
            for i in identities
        }
        if retry is None:
            retry = RetryPolicy()
        try:
            nodes = retry.call(
                "Looking up pull requests",
                lambda: host.list_pull_requests(sorted(branches)),
            )
        except RuntimeError as e:
            raise RemoteUnavailableError(
                "Could not load pull requests from GitHub: {}".format(e)
            ) from e

        prs = []
        for branch, node in nodes.items():
            prs.append(convert_node(repo, branches[branch], node))
        logging.debug(
            "Found {} pull requests for {} identities".format(len(prs), len(branches))
        )
        return RemoteIndex(prs)


def convert_node(
    repo: GitRepository, identity: CommitIdentity, node: Dict[str, Any]
) -> PullRequest:
    pr = PullRequest(
        identity=identity,
        number=GitHubNumber(node["number"]),
        url=node["url"],
        head_branch=node["headRefName"],
        head_oid=node.get("headRefOid"),
        base_branch=node["baseRefName"],
        base_oid=node.get("baseRefOid"),
        title=node["title"],
        body=node["body"],
        state=node["state"],
        labels={n["name"] for n in node["labels"]["nodes"]},
        is_draft=node["isDraft"],
    )
    if not pr.is_open:
        return pr

    # Prefer what we just fetched; it is what every other decision of
    # this command will see
    base_oid = repo.remote_branch(pr.base_branch) or pr.base_oid
    head_oid = repo.remote_branch(pr.head_branch) or pr.head_oid
    pr.base_oid = base_oid
    pr.head_oid = head_oid
    if base_oid is None or head_oid is None:
        return pr
    try:
        pr.content_hash = repo.content_hash(base_oid, head_oid, three_dot=True)
        pr.based_on_tip = repo.is_ancestor(base_oid, head_oid)
    except stacksync.shell.ShellError as e:
        # Objects we do not have locally; treated as changed
        logging.debug("Could not compare #{}: {}".format(pr.number, e))
        pr.content_hash = None
        pr.based_on_tip = False
    return pr


def describe(pr: PullRequest) -> str:
    state = pr.state.lower()
    if pr.is_draft and pr.is_open:
        state = "draft"
    return "#{} ({}) {} -> {}".format(pr.number, state, pr.head_branch, pr.base_branch)
