#!/usr/bin/env python3

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set, Tuple

import stacksync.identity
from stacksync.bindings import BindingStore
from stacksync.errors import (
    RemoteError,
    StackSyncError,
    StaleStateError,
    TransientRemoteError,
)
from stacksync.git import GitRepository
from stacksync.host import GitHubHost
from stacksync.plan import (
    Action,
    AddLabel,
    BaseTarget,
    CreatePullRequest,
    RetargetBase,
    SyncPlan,
    UpdateHead,
    UpdateMetadata,
)
from stacksync.retry import RetryPolicy
from stacksync.stack import Commit, Stack
from stacksync.types import CommitIdentity, GitCommitHash, GitHubNumber

APPLIED = "applied"
UNCHANGED = "unchanged"
FAILED = "failed"
SKIPPED = "skipped"


@dataclass
class ActionOutcome:
    action: Action
    status: str
    error: Optional[BaseException] = None
    number: Optional[GitHubNumber] = None

    def describe(self) -> str:
        r = "{:<10}{}".format(self.status, self.action.describe())
        if self.number is not None and isinstance(self.action, CreatePullRequest):
            r += " -> #{}".format(self.number)
        if self.error is not None:
            r += "\n          {}".format(self.error)
        return r


@dataclass
class ExecutionResult:
    outcomes: List[ActionOutcome] = field(default_factory=list)

    # New HEAD, if commits were stamped with their Stack-Id
    head: Optional[GitCommitHash] = None

    @property
    def failures(self) -> List[ActionOutcome]:
        return [o for o in self.outcomes if o.status in (FAILED, SKIPPED)]

    @property
    def ok(self) -> bool:
        return not self.failures

    def render(self) -> str:
        return "\n".join(o.describe() for o in self.outcomes)


@dataclass
class ExecuteOptions:
    username: str
    branch_prefix: str = "stack/"
    # "cherry-pick" or "rebase"
    update_mode: str = "cherry-pick"
    # Commit message of the commits pushed to update a pull request in
    # cherry-pick mode
    message: str = "Update"


class PlanExecutor(object):
    """
    Runs a SyncPlan in order.  Remote calls are retried on transient
    failure; any other failure marks the action failed, and everything
    that depends on it (directly or not) is skipped.  Applied actions are
    never rolled back.

    New pull requests get their Stack-Id stamped into the local commit
    once the whole plan has run (or was interrupted), with a single
    rewrite of the stack.
    """

    repo: GitRepository
    host: GitHubHost
    bindings: BindingStore
    stack: Stack
    options: ExecuteOptions
    retry: RetryPolicy
    identity_factory: Callable[[], CommitIdentity]

    # Identities minted in this run, by commit
    identities: Dict[GitCommitHash, CommitIdentity]

    # Pull requests created in this run, by commit
    numbers: Dict[GitCommitHash, GitHubNumber]

    # Branch tips we pushed in this run
    pushed: Dict[str, GitCommitHash]

    # New commit messages still to be written, by commit
    stamps: Dict[GitCommitHash, str]

    def __init__(
        self,
        *,
        repo: GitRepository,
        host: GitHubHost,
        bindings: BindingStore,
        stack: Stack,
        options: ExecuteOptions,
        retry: Optional[RetryPolicy] = None,
        identity_factory: Callable[[], CommitIdentity] = stacksync.identity.new_identity,
    ) -> None:
        self.repo = repo
        self.host = host
        self.bindings = bindings
        self.stack = stack
        self.options = options
        self.retry = retry if retry is not None else RetryPolicy()
        self.identity_factory = identity_factory
        self.identities = {}
        self.numbers = {}
        self.pushed = {}
        self.stamps = {}

    def execute(self, plan: SyncPlan) -> ExecutionResult:
        result = ExecutionResult()
        not_done: Set[int] = set()
        try:
            for action in plan:
                blocked = [d for d in action.depends_on if d in not_done]
                if blocked:
                    logging.warning(
                        "Skipping {}: depends on failed action {}".format(
                            action.describe(), ", ".join(map(str, blocked))
                        )
                    )
                    not_done.add(action.id)
                    result.outcomes.append(
                        ActionOutcome(action, SKIPPED, number=self._number(action))
                    )
                    continue
                try:
                    status = self._run(action)
                except RuntimeError as e:
                    err = self._attribute(action, e)
                    logging.error("{} failed: {}".format(action.kind, err))
                    not_done.add(action.id)
                    result.outcomes.append(
                        ActionOutcome(action, FAILED, error=err, number=self._number(action))
                    )
                    continue
                result.outcomes.append(
                    ActionOutcome(action, status, number=self._number(action))
                )
        finally:
            result.head = self.apply_stamps()
        return result

    def _number(self, action: Action) -> Optional[GitHubNumber]:
        pr = getattr(action, "pull_request", None)
        if pr is not None:
            return pr.number
        return self.numbers.get(action.commit.oid)

    def _attribute(self, action: Action, e: RuntimeError) -> StackSyncError:
        """
        Make sure the error names the commit and pull request it is about.
        """
        identity = action.commit.identity or self.identities.get(action.commit.oid)
        number = self._number(action)
        if isinstance(e, StackSyncError):
            if e.identity is None:
                e.identity = identity
            if e.number is None:
                e.number = number
            return e
        err = RemoteError(str(e), identity=identity, number=number)
        err.__cause__ = e
        return err

    def _run(self, action: Action) -> str:
        if isinstance(action, CreatePullRequest):
            return self.create(action)
        if isinstance(action, UpdateHead):
            return self.update_head(action)
        if isinstance(action, RetargetBase):
            return self.retarget(action)
        if isinstance(action, UpdateMetadata):
            return self.update_metadata(action)
        if isinstance(action, AddLabel):
            return self.add_label(action)
        raise RuntimeError("Unrecognized action {}".format(action.kind))

    def head_branch(self, identity: CommitIdentity) -> str:
        return stacksync.identity.head_branch(
            self.options.branch_prefix, self.options.username, identity
        )

    def resolve(self, base: BaseTarget) -> Tuple[str, GitCommitHash]:
        """
        Branch name and current tip of a base, taking into account what
        we pushed earlier in this run.
        """
        if base.commit is not None:
            identity = base.commit.identity or self.identities.get(base.commit.oid)
            if identity is None:
                raise StaleStateError(
                    "{} has no pull request to stack on".format(base.commit.describe())
                )
            branch = self.head_branch(identity)
        else:
            assert base.branch is not None
            branch = base.branch
        tip = self.pushed.get(branch) or self.repo.remote_branch(branch)
        if tip is None:
            raise StaleStateError(
                "Base branch {} does not exist on {}".format(branch, self.repo.remote_name)
            )
        return branch, tip

    def push(self, branch: str, oid: GitCommitHash, *, expect: Optional[str]) -> None:
        self.retry.call(
            "Pushing {}".format(branch),
            lambda: self.repo.push_branch(branch, oid, expect=expect),
        )
        self.pushed[branch] = oid

    def rebuild(
        self, c: Commit, prev: Optional[GitCommitHash], base_tip: GitCommitHash
    ) -> Optional[GitCommitHash]:
        """
        New head commit for c's pull request on top of base_tip, or None
        if the current head prev already is that.

        In cherry-pick mode the new head is a descendant of prev (and of
        base_tip), so reviewers can see what changed since their last
        look.  In rebase mode it is the patch alone on base_tip.
        """
        if prev is None:
            raise StaleStateError(
                "The head branch of {} is gone from {}".format(
                    c.describe(), self.repo.remote_name
                )
            )
        tree = self.repo.apply_onto(c.header, base_tip)
        if self.options.update_mode == "cherry-pick":
            contained = self.repo.is_ancestor(base_tip, prev)
            if contained and self.repo.tree_of(prev) == tree:
                return None
            parents = [prev] if contained else [prev, base_tip]
            return self.repo.commit_tree(tree, parents, self.options.message)
        h = self.repo.header(prev)
        if h.parents == [base_tip] and h.tree == tree:
            return None
        return self.repo.commit_tree(
            tree, [base_tip], stacksync.identity.strip(c.message), author=c.header
        )

    def _update_expect(self, prev: GitCommitHash) -> Optional[str]:
        # Cherry-pick mode only ever fast-forwards
        return prev if self.options.update_mode == "rebase" else None

    def create(self, action: CreatePullRequest) -> str:
        c = action.commit
        identity = self.identity_factory()
        self.identities[c.oid] = identity
        branch = self.head_branch(identity)
        base_branch, base_tip = self.resolve(action.base)

        tree = self.repo.apply_onto(c.header, base_tip)
        head = self.repo.commit_tree(
            tree, [base_tip], stacksync.identity.strip(c.message), author=c.header
        )
        self.push(branch, head, expect="")

        try:
            number, url = self.retry.call(
                "Creating pull request for {}".format(c.describe()),
                self._opener(action, branch, base_branch),
            )
        except RuntimeError:
            # Nothing refers to the branch; the next run mints a new identity
            self.discard_branch(branch, head)
            raise
        self.numbers[c.oid] = number
        logging.info("Created #{} {} ({})".format(number, c.title, url))

        binding = action.binding
        if binding.pending:
            assert binding.oid is not None
            binding = binding.with_identity(self.identities[binding.oid])
        self.bindings.set(identity, binding)
        self.stamps[c.oid] = stacksync.identity.stamp(c.message, identity, url)

        reviewers = c.reviewers()
        if reviewers:
            try:
                self.retry.call(
                    "Requesting reviews on #{}".format(number),
                    lambda: self.host.request_reviewers(number, reviewers),
                )
            except StackSyncError as e:
                logging.warning(
                    "Could not request reviewers {} on #{}: {}".format(
                        ", ".join(reviewers), number, e
                    )
                )
        return APPLIED

    def _opener(
        self, action: CreatePullRequest, branch: str, base_branch: str
    ) -> Callable[[], Tuple[GitHubNumber, str]]:
        """
        The call that opens the pull request of branch, for retry.call.
        A transient failure may have hit after GitHub created the pull
        request, so every attempt after one looks for it before posting
        again.
        """
        c = action.commit
        retrying = False

        def open_pull_request() -> Tuple[GitHubNumber, str]:
            nonlocal retrying
            if retrying:
                found = self.host.list_pull_requests([branch]).get(branch)
                if found is not None and found["state"] == "OPEN":
                    logging.info(
                        "#{} was opened by an earlier attempt".format(found["number"])
                    )
                    return GitHubNumber(found["number"]), found["url"]
            try:
                return self.host.create_pull_request(
                    head=branch,
                    base=base_branch,
                    title=c.title,
                    body=c.body,
                    draft=action.draft,
                )
            except TransientRemoteError:
                retrying = True
                raise

        return open_pull_request

    def discard_branch(self, branch: str, oid: GitCommitHash) -> None:
        """
        Delete a head branch we pushed for a pull request that was never
        opened.
        """
        self.pushed.pop(branch, None)
        try:
            self.repo.delete_branch(branch, expect=oid)
        except RuntimeError as e:
            logging.warning("Could not delete {}: {}".format(branch, e))

    def update_head(self, action: UpdateHead) -> str:
        pr = action.pull_request
        _, base_tip = self.resolve(action.base)
        prev = self.pushed.get(pr.head_branch) or pr.head_oid
        new = self.rebuild(action.commit, prev, base_tip)
        if new is None:
            logging.info("#{} is already up to date".format(pr.number))
            return UNCHANGED
        assert prev is not None
        self.push(pr.head_branch, new, expect=self._update_expect(prev))
        return APPLIED

    def retarget(self, action: RetargetBase) -> str:
        pr = action.pull_request
        base_branch, base_tip = self.resolve(action.base)
        prev = self.pushed.get(pr.head_branch) or pr.head_oid
        new = self.rebuild(action.commit, prev, base_tip)
        if new is not None:
            assert prev is not None
            self.push(pr.head_branch, new, expect=self._update_expect(prev))
        self.retry.call(
            "Retargeting #{}".format(pr.number),
            lambda: self.host.update_pull_request(pr.number, base=base_branch),
        )
        logging.info("Retargeted #{} onto {}".format(pr.number, base_branch))
        return APPLIED

    def update_metadata(self, action: UpdateMetadata) -> str:
        pr = action.pull_request
        self.retry.call(
            "Updating #{}".format(pr.number),
            lambda: self.host.update_pull_request(
                pr.number, title=action.title, body=action.body
            ),
        )
        return APPLIED

    def add_label(self, action: AddLabel) -> str:
        if action.pull_request is not None:
            number = action.pull_request.number
        else:
            number = self.numbers[action.commit.oid]
        self.retry.call(
            "Labelling #{}".format(number),
            lambda: self.host.add_labels(number, [action.label]),
        )
        return APPLIED

    def apply_stamps(self) -> Optional[GitCommitHash]:
        """
        Write the Stack-Id (and pull request link) of every pull request
        created so far into its commit message.
        """
        if not self.stamps:
            return None
        head = self.repo.rewrite_commit_messages(
            self.stack.root, self.stack.headers(), self.stamps
        )
        logging.info(
            "Stamped {} commit(s) with their Stack-Id; HEAD is now {}".format(
                len(self.stamps), head[:8]
            )
        )
        self.stamps = {}
        return head
