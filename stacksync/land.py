#!/usr/bin/env python3

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from stacksync.bindings import BRANCH, COMMIT, STACKED, BaseRef, BindingStore
from stacksync.errors import RemoteError, StackSyncError
from stacksync.execute import APPLIED, UNCHANGED, ActionOutcome, PlanExecutor
from stacksync.git import GitRepository
from stacksync.host import GitHubHost
from stacksync.plan import BaseTarget, RetargetBase, SyncPlan, order
from stacksync.remote_index import PullRequest, RemoteIndex
from stacksync.retry import RetryPolicy
from stacksync.session import Session
from stacksync.stack import Commit, Stack
from stacksync.types import CommitIdentity, GitHubNumber

# States of a landing request
NOT_ELIGIBLE = "not-eligible"
MERGED = "merged"
CASCADED = "cascaded"
FAILED = "failed"


@dataclass
class LandingOutcome:
    commit: Commit
    state: str
    number: Optional[GitHubNumber] = None
    # Why the commit was not eligible, or the merge failed
    reason: Optional[str] = None
    error: Optional[StackSyncError] = None
    # Retargets of the pull requests that were stacked on it
    retargeted: List[ActionOutcome] = field(default_factory=list)
    # Pull requests outside the local stack that were pointed at trunk
    retargeted_elsewhere: List[GitHubNumber] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.state == CASCADED

    def describe(self) -> str:
        r = "{:<13}{}".format(self.state, self.commit.describe())
        if self.number is not None:
            r += " (#{})".format(self.number)
        if self.reason:
            r += "\n             {}".format(self.reason)
        for o in self.retargeted:
            r += "\n             {}".format(o.describe())
        for n in self.retargeted_elsewhere:
            r += "\n             retargeted #{}".format(n)
        return r


class LandingCoordinator(object):
    """
    Merges pull requests of the stack bottom-up, and after every merge
    moves the pull requests that were stacked on the merged one to
    trunk, recording that in their bindings.

    Per commit: eligible -> merging -> merged -> cascaded, or failed
    (nothing mutated beyond the attempted merge).
    """

    repo: GitRepository
    host: GitHubHost
    index: RemoteIndex
    bindings: BindingStore
    stack: Stack
    executor: PlanExecutor
    merge_method: str
    retry: RetryPolicy

    # Pull requests merged by us in this run
    landed: Set[CommitIdentity]

    # Base branches we changed in this run, by pull request
    bases: Dict[GitHubNumber, str]

    def __init__(
        self,
        *,
        repo: GitRepository,
        host: GitHubHost,
        index: RemoteIndex,
        bindings: BindingStore,
        stack: Stack,
        executor: PlanExecutor,
        merge_method: str = "squash",
        retry: Optional[RetryPolicy] = None,
    ) -> None:
        self.repo = repo
        self.host = host
        self.index = index
        self.bindings = bindings
        self.stack = stack
        self.executor = executor
        self.merge_method = merge_method
        self.retry = retry if retry is not None else RetryPolicy()
        self.landed = set()
        self.bases = {}

    @property
    def trunk(self) -> str:
        return self.stack.trunk

    def is_landed(self, c: Commit) -> bool:
        if c.identity is None:
            return False
        if c.identity in self.landed:
            return True
        pr = self.index.get(c.identity)
        return pr is not None and pr.is_merged

    def base_of(self, pr: PullRequest) -> str:
        return self.bases.get(pr.number, pr.base_branch)

    def head_of(self, pr: PullRequest) -> Optional[str]:
        return self.executor.pushed.get(pr.head_branch) or pr.head_oid

    def check(self, c: Commit) -> Optional[str]:
        """
        None if c can be landed now, otherwise the reason it cannot.
        """
        if c.identity is None:
            return "it has no pull request; run stacksync sync first"
        pr = self.index.get(c.identity)
        if pr is None:
            return "no pull request found for Stack-Id {}".format(c.identity)
        if self.is_landed(c):
            return "#{} is already merged".format(pr.number)
        if not pr.is_open:
            return "#{} is closed".format(pr.number)
        base = self.base_of(pr)
        if base != self.trunk:
            return "#{} is based on {}, not {}; land what is below it first".format(
                pr.number, base, self.trunk
            )
        if self.executor.options.update_mode == "cherry-pick":
            trunk_tip = self.repo.remote_branch(self.trunk)
            head = self.head_of(pr)
            if trunk_tip is None or head is None:
                return "#{} cannot be compared against {}".format(pr.number, self.trunk)
            remote_hash = self.repo.content_hash(trunk_tip, head, three_dot=True)
            if remote_hash != c.content_hash:
                return (
                    "#{} does not match the local commit; run stacksync sync so "
                    "what lands is what was reviewed".format(pr.number)
                )
        return None

    def land(self, c: Commit) -> LandingOutcome:
        reason = self.check(c)
        if reason is not None:
            logging.warning("Cannot land {}: {}".format(c.describe(), reason))
            return LandingOutcome(
                c, NOT_ELIGIBLE, number=self._number(c), reason=reason
            )
        assert c.identity is not None
        pr = self.index.get(c.identity)
        assert pr is not None
        head = self.head_of(pr)
        assert head is not None

        logging.info("Merging #{} {}".format(pr.number, c.title))
        try:
            # Never retried: a conflict needs a human, and a merge that
            # went through without us hearing back must not be repeated
            self.host.merge_pull_request(
                pr.number,
                method=self.merge_method,
                sha=head,
                title="{} (#{})".format(c.title, pr.number),
                body=c.body,
            )
        except StackSyncError as e:
            e.identity = e.identity or c.identity
            e.number = e.number or pr.number
            logging.error("Landing {} failed: {}".format(c.describe(), e))
            return LandingOutcome(
                c, FAILED, number=pr.number, reason=str(e), error=e
            )
        self.landed.add(c.identity)
        outcome = LandingOutcome(c, MERGED, number=pr.number)
        logging.info("Merged #{}".format(pr.number))

        self.repo.fetch()
        try:
            self.cascade(c, pr, outcome)
        except StackSyncError as e:
            outcome.reason = str(e)
            outcome.error = e
            return outcome
        if all(o.status in (APPLIED, UNCHANGED) for o in outcome.retargeted):
            outcome.state = CASCADED
        else:
            outcome.reason = "some pull requests stacked on #{} were not retargeted".format(
                pr.number
            )
        return outcome

    def dependents(self, c: Commit, pr: PullRequest) -> List[Commit]:
        """
        Open pull requests of the local stack whose base is c's branch.
        """
        r = []
        for other in self.stack:
            if other.position <= c.position:
                continue
            if other.identity is None or self.is_landed(other):
                continue
            other_pr = self.index.get(other.identity)
            if other_pr is None or not other_pr.is_open:
                continue
            ref = self.bindings.get(other.identity)
            if ref is not None and ref.kind == COMMIT:
                hit = ref.value == c.identity
            elif ref is not None and ref.kind == BRANCH:
                hit = ref.value == pr.head_branch
            else:
                hit = self.base_of(other_pr) == pr.head_branch
            if hit:
                r.append(other)
        return r

    def cascade(self, c: Commit, pr: PullRequest, outcome: LandingOutcome) -> None:
        trunk = BaseTarget(branch=self.trunk)
        in_stack = self.dependents(c, pr)
        actions = []
        deps = {}
        for d in in_stack:
            assert d.identity is not None
            d_pr = self.index.get(d.identity)
            assert d_pr is not None
            # Stacked bindings resolve to trunk by themselves now
            ref = self.bindings.get(d.identity)
            if ref is not None and ref.kind != STACKED:
                self.bindings.set(d.identity, BaseRef.branch(self.trunk))
            a = RetargetBase(d, pull_request=d_pr, base=trunk)
            actions.append(a)
            deps[id(a)] = []
        if actions:
            result = self.executor.execute(SyncPlan(order(actions, deps)))
            outcome.retargeted = result.outcomes
            for o in result.outcomes:
                if o.status == APPLIED and o.number is not None:
                    self.bases[o.number] = self.trunk

        # Pull requests outside the local stack only get their base moved;
        # their owner's next sync rebuilds the head
        local = {d.identity for d in self.stack if d.identity is not None}
        for other in self.index.with_base(pr.head_branch):
            if other.identity in local or self.bases.get(other.number) == self.trunk:
                continue
            try:
                self.retry.call(
                    "Retargeting #{}".format(other.number),
                    lambda: self.host.update_pull_request(other.number, base=self.trunk),
                )
            except StackSyncError as e:
                raise RemoteError(
                    "Could not retarget #{} onto {}: {}".format(
                        other.number, self.trunk, e
                    ),
                    number=other.number,
                ) from e
            self.bases[other.number] = self.trunk
            ref = self.bindings.get(other.identity)
            if ref is not None and ref.kind == COMMIT and ref.value == c.identity:
                self.bindings.set(other.identity, BaseRef.branch(self.trunk))
            outcome.retargeted_elsewhere.append(other.number)
            logging.info("Retargeted #{} onto {}".format(other.number, self.trunk))

    def _number(self, c: Commit) -> Optional[GitHubNumber]:
        pr = self.index.get(c.identity)
        return pr.number if pr is not None else None

    def land_all(self, upto: Optional[Commit] = None) -> List[LandingOutcome]:
        """
        Land the stack bottom-up, up to and including upto (default: the
        whole stack), stopping at the first commit that is not eligible or
        fails to merge.  Never lands out of order.
        """
        r = []
        for c in self.stack:
            if upto is not None and c.position > upto.position:
                break
            if self.is_landed(c):
                continue
            outcome = self.land(c)
            r.append(outcome)
            if outcome.state in (NOT_ELIGIBLE, FAILED):
                break
        return r


def bottom_open(stack: Stack, index: RemoteIndex) -> Optional[Commit]:
    """
    The lowest commit of the stack that is not landed yet.
    """
    for c in stack:
        pr = index.get(c.identity)
        if pr is not None and pr.is_merged:
            continue
        return c
    return None


def exit_status(outcomes: List[LandingOutcome]) -> int:
    """
    0 if everything asked for landed, 2 if nothing was merged at all,
    1 otherwise.
    """
    if all(o.ok for o in outcomes):
        return 0
    if not any(o.state in (MERGED, CASCADED) for o in outcomes):
        return 2
    return 1


def main(
    *,
    session: Session,
    rev: Optional[str] = None,
    land_all: bool = False,
    update_mode: str = "cherry-pick",
    merge_method: str = "squash",
    message: str = "Update",
) -> List[LandingOutcome]:
    """
    Land rev (default: the lowest commit not landed yet).  With
    land_all, land everything up to rev (default: the whole stack).
    """
    stack = session.read_stack()
    index = session.load_index(stack)
    coordinator = LandingCoordinator(
        repo=session.repo,
        host=session.host,
        index=index,
        bindings=session.bindings,
        stack=stack,
        executor=session.executor(stack, update_mode=update_mode, message=message),
        merge_method=merge_method,
        retry=session.retry,
    )

    target = session.commit_of(stack, rev) if rev is not None else None
    try:
        if land_all:
            outcomes = coordinator.land_all(upto=target)
        else:
            if target is None:
                target = bottom_open(stack, index)
            if target is None or coordinator.is_landed(target):
                logging.info("Nothing to land.")
                return []
            outcomes = [coordinator.land(target)]
    finally:
        session.save()

    if not outcomes:
        logging.info("Nothing to land.")
    for o in outcomes:
        logging.info(o.describe())
    if any(o.state in (MERGED, CASCADED) for o in outcomes):
        logging.info(
            "Landed commits stay in your local stack until you rebase onto {}/{}".format(
                session.remote_name, session.trunk
            )
        )
    return outcomes
