#!/usr/bin/env python3

import logging
import re
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Sequence, Set, Tuple

import stacksync.identity
from stacksync.bindings import BaseRef
from stacksync.errors import InvalidBaseError
from stacksync.execute import ExecutionResult
from stacksync.git import is_revision
from stacksync.plan import PlanOptions, SyncPlan, plan
from stacksync.remote_index import RemoteIndex
from stacksync.selector import DefaultSelector, Selector, base_for_choice, untracked
from stacksync.session import Session
from stacksync.stack import Commit, Stack
from stacksync.types import CommitIdentity, GitCommitHash

RE_RELATIVE_BASE = re.compile(r"^HEAD[\^~](\d+)$")


@dataclass
class SyncResult:
    stack: Stack
    plan: SyncPlan

    # None on a dry run
    result: Optional[ExecutionResult] = None

    @property
    def ok(self) -> bool:
        return self.result is None or self.result.ok


def parse_base(session: Session, stack: Stack, base: str) -> Tuple[Commit, BaseRef]:
    """
    Turn --base into a BaseRef for the top commit of the stack.

    HEAD^N (or HEAD~N) names the commit N below the top; reaching below
    the stack means trunk.  Anything else is a branch of the remote.
    """
    if not len(stack):
        raise InvalidBaseError("Invalid base {}: there are no commits to sync".format(base))
    top = stack[len(stack) - 1]

    m = RE_RELATIVE_BASE.match(base)
    if m:
        n = int(m.group(1))
        if n == 0:
            raise InvalidBaseError(
                "Invalid base {}: a commit cannot be based on itself".format(base),
                identity=top.identity,
            )
        pos = top.position - n
        if pos < 0:
            return top, BaseRef.branch(stack.trunk)
        return top, base_for_choice(top, stack[pos], stack.trunk)

    prefix = session.remote_name + "/"
    if base.startswith(prefix):
        base = base[len(prefix):]
    if is_revision(base) or session.repo.remote_branch(base) is None:
        raise InvalidBaseError(
            "Invalid base {}: {} has no such branch".format(base, session.remote_name),
            identity=top.identity,
        )
    return top, BaseRef.branch(base)


def choose_bases(
    selector: Selector,
    stack: Stack,
    index: RemoteIndex,
    create: Optional[Set[GitCommitHash]],
    bases: Dict[GitCommitHash, BaseRef],
) -> None:
    """
    Ask for the base of every commit about to get a pull request above
    the bottom of the stack, unless it was given already.
    """
    landed = {pr.identity for pr in index if pr.is_merged}
    for c in untracked(stack):
        if c.position == 0 or c.oid in bases:
            continue
        if create is not None and c.oid not in create:
            continue
        below = [
            b
            for b in reversed(stack.commits[: c.position])
            if b.identity not in landed
        ]
        if not below:
            continue
        bases[c.oid] = selector.choose_base(c, below, stack.trunk)


def main(
    *,
    session: Session,
    message: str = "Update",
    update_mode: str = "cherry-pick",
    update_metadata: bool = False,
    draft: bool = False,
    labels: Sequence[str] = (),
    base: Optional[str] = None,
    pick: bool = False,
    dry_run: bool = False,
    selector: Optional[Selector] = None,
    identity_factory: Callable[[], CommitIdentity] = stacksync.identity.new_identity,
) -> SyncResult:
    if selector is None:
        selector = DefaultSelector()

    stack = session.read_stack()
    index = session.load_index(stack)

    create: Optional[Set[GitCommitHash]] = None
    if pick:
        create = selector.choose_commits(untracked(stack))

    bases: Dict[GitCommitHash, BaseRef] = {}
    if base is not None:
        top, ref = parse_base(session, stack, base)
        bases[top.oid] = ref
        if top.identity is not None and not dry_run:
            if ref.pending:
                raise InvalidBaseError(
                    "Invalid base {}: that commit has no pull request yet; sync it "
                    "first".format(base),
                    identity=top.identity,
                )
            session.bindings.set(top.identity, ref)
    choose_bases(selector, stack, index, create, bases)

    options = PlanOptions(
        username=session.username,
        branch_prefix=session.branch_prefix,
        create=create,
        bases=bases,
        update_metadata=update_metadata,
        labels=list(labels),
        draft=draft,
    )
    sync_plan = plan(stack, index, session.bindings, options)

    if dry_run:
        print(sync_plan.render())
        return SyncResult(stack, sync_plan)

    for n in sync_plan.notes:
        logging.info("NB: {}".format(n))
    if sync_plan.empty:
        logging.info("Nothing to do; the pull requests are up to date.")
        session.save()
        return SyncResult(stack, sync_plan, ExecutionResult())

    executor = session.executor(
        stack,
        update_mode=update_mode,
        message=message,
        identity_factory=identity_factory,
    )
    try:
        result = executor.execute(sync_plan)
    finally:
        session.save()

    logging.info("\n# Summary of changes\n\n{}\n".format(result.render()))
    if result.head is not None:
        logging.info(
            "Commit messages were updated; to undo, run:\n\n    git reset --soft {}\n".format(
                stack.headers()[-1].commit_id
            )
        )
    for o in result.failures:
        logging.error("Not done: {}".format(o.action.describe()))
    return SyncResult(stack, sync_plan, result)

