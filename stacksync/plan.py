#!/usr/bin/env python3

import heapq
import logging
from dataclasses import dataclass, field
from typing import ClassVar, Dict, Iterator, List, Optional, Set, Tuple

import stacksync.identity
from stacksync.bindings import BRANCH, COMMIT, STACKED, BaseRef, BindingStore
from stacksync.errors import InvalidBaseError, StaleStateError
from stacksync.remote_index import PullRequest, RemoteIndex
from stacksync.stack import Commit, Stack
from stacksync.types import CommitIdentity, GitCommitHash


@dataclass(frozen=True)
class BaseTarget:
    """
    A resolved base: either a literal remote branch, or the head branch
    of another commit of the stack (whose branch may not exist yet, if
    that commit is being turned into a pull request in the same plan).
    """

    branch: Optional[str] = None
    commit: Optional[Commit] = None

    def branch_name(self, prefix: str, username: str) -> Optional[str]:
        """
        None if the base commit has no identity yet.
        """
        if self.commit is None:
            return self.branch
        if self.commit.identity is None:
            return None
        return stacksync.identity.head_branch(prefix, username, self.commit.identity)

    def __str__(self) -> str:
        if self.commit is not None:
            return "{} {}".format(self.commit.oid[:8], self.commit.title)
        assert self.branch is not None
        return self.branch


@dataclass
class Action:
    """
    One atomic remote mutation.  Actions are numbered in execution
    order; depends_on lists the numbers of the actions that must have
    succeeded before this one may run.
    """

    kind: ClassVar[str] = "action"

    # Among actions whose dependencies are satisfied, lower phases run
    # first: branch-establishing actions, then retargets, then the rest
    phase: ClassVar[int] = 0

    commit: Commit
    id: int = field(default=0, init=False)
    depends_on: List[int] = field(default_factory=list, init=False)

    def details(self) -> str:
        return ""

    def describe(self) -> str:
        r = "{:<16}{}".format(self.kind, self.commit.describe())
        d = self.details()
        if d:
            r += "  ({})".format(d)
        return r


@dataclass
class CreatePullRequest(Action):
    kind: ClassVar[str] = "create"
    phase: ClassVar[int] = 0

    base: BaseTarget
    # Recorded as the commit's BaseBinding once the pull request exists
    binding: BaseRef
    draft: bool = False

    def details(self) -> str:
        return "on {}{}".format(self.base, ", draft" if self.draft else "")


@dataclass
class UpdateHead(Action):
    kind: ClassVar[str] = "update-head"
    phase: ClassVar[int] = 0

    pull_request: PullRequest
    base: BaseTarget
    # "content" if the patch changed, "restack" if only its base moved
    reason: str

    def details(self) -> str:
        return "#{}, {}".format(self.pull_request.number, self.reason)


@dataclass
class RetargetBase(Action):
    """
    Point the pull request at a new base.  The head is rebuilt on the
    new base first, so the pull request never shows changes that are
    not its own.
    """

    kind: ClassVar[str] = "retarget"
    phase: ClassVar[int] = 1

    pull_request: PullRequest
    base: BaseTarget

    def details(self) -> str:
        return "#{}, {} -> {}".format(
            self.pull_request.number, self.pull_request.base_branch, self.base
        )


@dataclass
class UpdateMetadata(Action):
    kind: ClassVar[str] = "update-metadata"
    phase: ClassVar[int] = 2

    pull_request: PullRequest
    title: str
    body: str

    def details(self) -> str:
        return "#{}".format(self.pull_request.number)


@dataclass
class AddLabel(Action):
    kind: ClassVar[str] = "add-label"
    phase: ClassVar[int] = 3

    # None when the pull request is created by an earlier action
    pull_request: Optional[PullRequest]
    label: str

    def details(self) -> str:
        if self.pull_request is None:
            return self.label
        return "#{}, {}".format(self.pull_request.number, self.label)


@dataclass
class SyncPlan:
    actions: List[Action] = field(default_factory=list)

    # Things we deliberately did nothing about, for the user's benefit
    notes: List[str] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not self.actions

    def __iter__(self) -> Iterator[Action]:
        return iter(self.actions)

    def __len__(self) -> int:
        return len(self.actions)

    def render(self) -> str:
        if self.empty:
            lines = ["Nothing to do; the pull requests are up to date."]
        else:
            lines = []
            for a in self.actions:
                line = "{:>3}. {}".format(a.id, a.describe())
                if a.depends_on:
                    line += "  [after {}]".format(", ".join(map(str, a.depends_on)))
                lines.append(line)
        lines.extend("NB: " + n for n in self.notes)
        return "\n".join(lines)


@dataclass
class PlanOptions:
    # Used with branch_prefix to name head branches
    username: str
    branch_prefix: str = "stack/"

    # Untracked commits to create pull requests for; None means all
    create: Optional[Set[GitCommitHash]] = None

    # Explicitly chosen bases for untracked commits (tracked commits
    # carry theirs in the BindingStore)
    bases: Dict[GitCommitHash, BaseRef] = field(default_factory=dict)

    update_metadata: bool = False
    labels: List[str] = field(default_factory=list)
    draft: bool = False


class ReconciliationPlanner(object):
    """
    Diffs the local stack against the pull requests we know about and
    produces the SyncPlan that brings the latter in line.  Pure: reads
    the stack, the index and the bindings, mutates nothing.
    """

    stack: Stack
    index: RemoteIndex
    bindings: BindingStore
    options: PlanOptions

    # Tracked commits whose pull request is already merged
    landed: Set[CommitIdentity]

    def __init__(
        self,
        stack: Stack,
        index: RemoteIndex,
        bindings: BindingStore,
        options: PlanOptions,
    ) -> None:
        self.stack = stack
        self.index = index
        self.bindings = bindings
        self.options = options
        self.landed = set()

    def plan(self) -> SyncPlan:
        """
        Raises:
            StaleStateError: a tracked commit's pull request was closed
                or cannot be found
            InvalidBaseError: a base binding that cannot be honored
        """
        result = SyncPlan()
        active = self._active_commits(result)

        actions: List[Action] = []
        deps: Dict[int, List[Action]] = {}
        # Action that (re)establishes the head branch of a commit, by oid
        establishing: Dict[GitCommitHash, Action] = {}

        def add(a: Action, *after: Optional[Action]) -> None:
            actions.append(a)
            deps[id(a)] = [d for d in after if d is not None]

        for i, c in enumerate(active):
            target, binding = self.resolve_base(c, active[:i])
            dep = establishing.get(target.commit.oid) if target.commit else None

            if c.identity is None:
                create = CreatePullRequest(
                    c, base=target, binding=binding, draft=self.options.draft
                )
                add(create, dep)
                establishing[c.oid] = create
                for label in self.options.labels:
                    add(AddLabel(c, pull_request=None, label=label), create)
                continue

            pr = self.index.get(c.identity)
            assert pr is not None
            branch = target.branch_name(self.options.branch_prefix, self.options.username)

            # New content is pushed on the new base before the pull
            # request is pointed at it; a retarget alone restacks
            head: Optional[Action] = None
            if c.content_hash != pr.content_hash:
                head = UpdateHead(c, pull_request=pr, base=target, reason="content")
                add(head, dep)
            if branch != pr.base_branch:
                retarget = RetargetBase(c, pull_request=pr, base=target)
                add(retarget, head if head is not None else dep)
                head = retarget
            elif head is None and (
                dep is not None or (branch != self.stack.trunk and not pr.based_on_tip)
            ):
                head = UpdateHead(c, pull_request=pr, base=target, reason="restack")
                add(head, dep)
            if head is not None:
                establishing[c.oid] = head

            if self.options.update_metadata and (
                c.title != pr.title or c.body != pr.body.strip()
            ):
                add(UpdateMetadata(c, pull_request=pr, title=c.title, body=c.body))

            for label in self.options.labels:
                if label not in pr.labels:
                    add(AddLabel(c, pull_request=pr, label=label))

        result.actions = order(actions, deps)
        logging.debug("Planned {} actions".format(len(result.actions)))
        return result

    def _active_commits(self, result: SyncPlan) -> List[Commit]:
        """
        The commits that get reconciled: selected untracked commits and
        tracked commits with an open pull request.
        """
        active = []
        for c in self.stack:
            if c.identity is None:
                if self.options.create is None or c.oid in self.options.create:
                    active.append(c)
                else:
                    result.notes.append("{} is not tracked; skipped".format(c.describe()))
                continue
            pr = self.index.get(c.identity)
            if pr is None:
                raise StaleStateError(
                    "{} has a Stack-Id but no pull request could be found for it; "
                    "remove the Stack-Id trailer to open a new one".format(c.describe()),
                    identity=c.identity,
                )
            if pr.is_merged:
                self.landed.add(c.identity)
                result.notes.append(
                    "{} already landed as #{}; rebase onto {} to drop it".format(
                        c.describe(), pr.number, self.stack.trunk
                    )
                )
                continue
            if pr.is_closed:
                raise StaleStateError(
                    "The pull request of {} was closed.  Reopen it on GitHub, or "
                    "remove the Stack-Id trailer to open a new one".format(c.describe()),
                    identity=c.identity,
                    number=pr.number,
                )
            active.append(c)
        return active

    def resolve_base(
        self, c: Commit, below: List[Commit]
    ) -> Tuple[BaseTarget, BaseRef]:
        """
        Where c's pull request should point, and the BaseRef that says so.
        below are the reconciled commits underneath c, bottom first.

        Precedence: an explicit choice for this run, then the persisted
        binding, then (for pull requests from before bindings existed)
        whatever base the pull request has now.
        """
        ref = self.options.bases.get(c.oid)
        if ref is None and c.identity is not None:
            ref = self.bindings.get(c.identity)
            if ref is None:
                pr = self.index.get(c.identity)
                assert pr is not None
                return self._target_of_branch(c, pr.base_branch, below), BaseRef.branch(
                    pr.base_branch
                )
        if ref is None:
            ref = BaseRef.stacked()
        return self._target_of(c, ref, below), ref

    def _trunk(self) -> BaseTarget:
        return BaseTarget(branch=self.stack.trunk)

    def _target_of(self, c: Commit, ref: BaseRef, below: List[Commit]) -> BaseTarget:
        if ref.kind == STACKED:
            if below:
                return BaseTarget(commit=below[-1])
            return self._trunk()

        if ref.kind == BRANCH:
            assert ref.value is not None
            return self._target_of_branch(c, ref.value, below)

        assert ref.kind == COMMIT
        if ref.pending:
            assert ref.oid is not None
            t = self.stack.by_oid(ref.oid)
        else:
            t = self.stack.by_identity(CommitIdentity(ref.value or ""))

        if t is not None:
            if t.position >= c.position:
                raise InvalidBaseError(
                    "{} cannot be based on {}, which is not below it in the "
                    "stack".format(c.describe(), t.describe()),
                    identity=c.identity,
                )
            if t.identity is not None and t.identity in self.landed:
                return self._trunk()
            if not any(b.oid == t.oid for b in below):
                raise InvalidBaseError(
                    "{} is based on {}, which is not being submitted; select it "
                    "too".format(c.describe(), t.describe()),
                    identity=c.identity,
                )
            return BaseTarget(commit=t)

        # A commit outside of the local stack
        assert ref.value is not None
        pr = self.index.get(CommitIdentity(ref.value))
        if pr is not None and pr.is_merged:
            return self._trunk()
        if pr is None or not pr.is_open:
            raise InvalidBaseError(
                "{} is bound to Stack-Id {}, which has no open pull request; "
                "rebind it with 'stacksync bind'".format(c.describe(), ref.value),
                identity=c.identity,
            )
        return BaseTarget(branch=pr.head_branch)

    def _target_of_branch(
        self, c: Commit, branch: str, below: List[Commit]
    ) -> BaseTarget:
        identity = stacksync.identity.identity_of_branch(
            self.options.branch_prefix, self.options.username, branch
        )
        if identity is None:
            return BaseTarget(branch=branch)
        if identity == c.identity:
            raise InvalidBaseError(
                "{} cannot be based on its own branch".format(c.describe()),
                identity=c.identity,
            )
        if identity in self.landed:
            return self._trunk()
        for t in below:
            if t.identity == identity:
                return BaseTarget(commit=t)
        return BaseTarget(branch=branch)


def order(actions: List[Action], deps: Dict[int, List[Action]]) -> List[Action]:
    """
    Topologically sort actions so every action comes after the actions
    it depends on; among the ready ones, lowest (phase, stack position,
    creation order) first.  Assigns ids in the resulting order.
    """
    seq = {id(a): i for i, a in enumerate(actions)}
    indegree = {id(a): len(deps[id(a)]) for a in actions}
    dependents: Dict[int, List[Action]] = {id(a): [] for a in actions}
    for a in actions:
        for d in deps[id(a)]:
            dependents[id(d)].append(a)

    def key(a: Action) -> Tuple[int, int, int]:
        return (a.phase, a.commit.position, seq[id(a)])

    ready = [(key(a), a) for a in actions if indegree[id(a)] == 0]
    heapq.heapify(ready)
    r: List[Action] = []
    while ready:
        _, a = heapq.heappop(ready)
        r.append(a)
        for b in dependents[id(a)]:
            indegree[id(b)] -= 1
            if indegree[id(b)] == 0:
                heapq.heappush(ready, (key(b), b))
    assert len(r) == len(actions), "dependency cycle in plan"

    for i, a in enumerate(r, start=1):
        a.id = i
    for a in r:
        a.depends_on = sorted(d.id for d in deps[id(a)])
    return r


def plan(
    stack: Stack,
    index: RemoteIndex,
    bindings: BindingStore,
    options: PlanOptions,
) -> SyncPlan:
    return ReconciliationPlanner(stack, index, bindings, options).plan()
