#!/usr/bin/env python3

import unittest
from typing import Any, Dict, List, Optional, Sequence

import expecttest

import stacksync.identity
import stacksync.plan
from stacksync.bindings import BaseRef, BindingStore
from stacksync.errors import InvalidBaseError, StaleStateError
from stacksync.git import CommitHeader
from stacksync.plan import PlanOptions, SyncPlan
from stacksync.remote_index import CLOSED, MERGED, OPEN, PullRequest, RemoteIndex
from stacksync.stack import Commit, Stack
from stacksync.types import CommitIdentity, ContentHash, GitCommitHash, GitHubNumber

USERNAME = "octocat"

ROOT = GitCommitHash("0" * 40)


def branch_of(identity: str) -> str:
    return stacksync.identity.head_branch("stack/", USERNAME, CommitIdentity(identity))


class StackBuilder(object):
    """
    Builds a Stack and RemoteIndex by hand: commits are named by a
    letter, which is also their identity (when tracked) and content.
    """

    def __init__(self) -> None:
        self.commits: List[Commit] = []
        self.prs: List[PullRequest] = []
        self.bindings = BindingStore()
        self.number = 500

    def commit(
        self,
        name: str,
        *,
        tracked: bool = True,
        content: Optional[str] = None,
        message: Optional[str] = None,
    ) -> Commit:
        position = len(self.commits)
        oid = GitCommitHash("{:040x}".format(position + 1))
        parent = self.commits[-1].oid if self.commits else ROOT
        header = CommitHeader(
            "\x1f".join(
                [
                    oid,
                    parent,
                    "f" * 40,
                    "A U Thor",
                    "a@example.com",
                    "0 +0000",
                    message if message is not None else name + "\n",
                ]
            )
        )
        c = Commit(
            identity=CommitIdentity(name) if tracked else None,
            content_hash=ContentHash(content if content is not None else "patch-" + name),
            title=name,
            body="",
            position=position,
            parent_identity=self.commits[-1].identity if self.commits else None,
            header=header,
        )
        self.commits.append(c)
        return c

    def pr(
        self,
        name: str,
        base: str,
        *,
        state: str = OPEN,
        content: Optional[str] = None,
        based_on_tip: bool = True,
        title: Optional[str] = None,
        labels: Sequence[str] = (),
    ) -> PullRequest:
        pr = PullRequest(
            identity=CommitIdentity(name),
            number=GitHubNumber(self.number),
            url="https://github.com/octo-org/octo-repo/pull/{}".format(self.number),
            head_branch=branch_of(name),
            head_oid=GitCommitHash("e" * 40),
            base_branch=base,
            base_oid=GitCommitHash("d" * 40),
            title=title if title is not None else name,
            body="",
            state=state,
            labels=set(labels),
            content_hash=ContentHash(content if content is not None else "patch-" + name),
            based_on_tip=based_on_tip,
        )
        self.number += 1
        self.prs.append(pr)
        return pr

    def stack(self) -> Stack:
        return Stack(root=ROOT, trunk="main", commits=list(self.commits))

    def plan(self, **kwargs: Any) -> SyncPlan:
        options = PlanOptions(username=USERNAME, **kwargs)
        return stacksync.plan.plan(
            self.stack(), RemoteIndex(self.prs), self.bindings, options
        )


def kinds(plan: SyncPlan) -> List[str]:
    return [a.kind for a in plan]


def deps(plan: SyncPlan) -> Dict[int, List[int]]:
    return {a.id: a.depends_on for a in plan}


class TestPlan(expecttest.TestCase):
    def setUp(self) -> None:
        self.b = StackBuilder()

    def tracked_stack(self) -> None:
        """
        A <- B <- C, all with open pull requests stacked the same way.
        """
        self.b.commit("A")
        self.b.commit("B")
        self.b.commit("C")
        self.b.pr("A", "main")
        self.b.pr("B", branch_of("A"))
        self.b.pr("C", branch_of("B"))
        for n in "ABC":
            self.b.bindings.set(CommitIdentity(n), BaseRef.stacked())

    def test_all_new(self) -> None:
        a = self.b.commit("A", tracked=False)
        b = self.b.commit("B", tracked=False)
        c = self.b.commit("C", tracked=False)
        plan = self.b.plan()
        self.assertEqual(kinds(plan), ["create", "create", "create"])
        self.assertEqual([x.commit.oid for x in plan], [a.oid, b.oid, c.oid])
        self.assertEqual(deps(plan), {1: [], 2: [1], 3: [2]})
        creates = [x for x in plan if isinstance(x, stacksync.plan.CreatePullRequest)]
        self.assertEqual(str(creates[0].base), "main")
        self.assertIs(creates[1].base.commit, a)
        self.assertIs(creates[2].base.commit, b)
        self.assertEqual([x.binding for x in creates], [BaseRef.stacked()] * 3)

    def test_render(self) -> None:
        self.b.commit("A", tracked=False)
        self.b.commit("B", tracked=False)
        self.assertExpectedInline(
            self.b.plan().render(),
            """\
  1. create          00000000 A  (on main)
  2. create          00000000 B  (on 00000000 A)  [after 1]""",
        )

    def test_up_to_date(self) -> None:
        self.tracked_stack()
        plan = self.b.plan()
        self.assertTrue(plan.empty)
        self.assertExpectedInline(
            plan.render(), """Nothing to do; the pull requests are up to date."""
        )

    def test_reorder_only_retargets(self) -> None:
        self.b.commit("A")
        self.b.commit("C")
        self.b.commit("B")
        self.b.pr("A", "main")
        self.b.pr("B", branch_of("A"))
        self.b.pr("C", branch_of("B"))
        for n in "ABC":
            self.b.bindings.set(CommitIdentity(n), BaseRef.stacked())
        plan = self.b.plan()
        self.assertEqual(kinds(plan), ["retarget", "retarget"])
        c, b = list(plan)
        self.assertEqual(c.commit.title, "C")
        self.assertEqual(b.commit.title, "B")
        self.assertEqual(b.depends_on, [c.id])

    def test_content_change_restacks_above(self) -> None:
        self.tracked_stack()
        self.b.commits[1].content_hash = ContentHash("patch-B2")
        plan = self.b.plan()
        self.assertEqual(kinds(plan), ["update-head", "update-head"])
        b, c = list(plan)
        assert isinstance(b, stacksync.plan.UpdateHead)
        assert isinstance(c, stacksync.plan.UpdateHead)
        self.assertEqual(b.reason, "content")
        self.assertEqual(c.reason, "restack")
        self.assertEqual(c.depends_on, [b.id])

    def test_base_moved_restacks(self) -> None:
        self.tracked_stack()
        self.b.prs[2].based_on_tip = False
        plan = self.b.plan()
        self.assertEqual(kinds(plan), ["update-head"])
        self.assertEqual(plan.actions[0].commit.title, "C")

    def test_trunk_moving_does_not_restack(self) -> None:
        self.tracked_stack()
        self.b.prs[0].based_on_tip = False
        self.assertTrue(self.b.plan().empty)

    def test_landed_bottom(self) -> None:
        self.tracked_stack()
        self.b.prs[0].state = MERGED
        plan = self.b.plan()
        self.assertEqual(kinds(plan), ["retarget", "update-head"])
        retarget, restack = list(plan)
        self.assertEqual(retarget.commit.title, "B")
        self.assertEqual(str(retarget.base), "main")  # type: ignore[attr-defined]
        self.assertEqual(restack.depends_on, [retarget.id])
        self.assertEqual(len(plan.notes), 1)
        self.assertIn("already landed as #500", plan.notes[0])

    def test_closed_is_stale(self) -> None:
        self.tracked_stack()
        self.b.prs[1].state = CLOSED
        with self.assertRaises(StaleStateError) as cm:
            self.b.plan()
        self.assertEqual(cm.exception.number, 501)
        self.assertEqual(cm.exception.identity, "B")

    def test_missing_pull_request_is_stale(self) -> None:
        self.tracked_stack()
        del self.b.prs[2]
        with self.assertRaises(StaleStateError):
            self.b.plan()

    def test_removed_commit_is_left_alone(self) -> None:
        self.tracked_stack()
        del self.b.commits[2]
        self.assertTrue(self.b.plan().empty)

    def test_metadata_only_on_request(self) -> None:
        self.tracked_stack()
        self.b.prs[0].title = "Edited on GitHub"
        self.assertTrue(self.b.plan().empty)
        plan = self.b.plan(update_metadata=True)
        self.assertEqual(kinds(plan), ["update-metadata"])

    def test_labels(self) -> None:
        self.tracked_stack()
        self.b.prs[0].labels = {"ready"}
        self.b.commit("D", tracked=False)
        plan = self.b.plan(labels=["ready"])
        self.assertEqual(kinds(plan), ["create", "add-label", "add-label", "add-label"])
        create = plan.actions[0]
        self.assertEqual(
            [a.commit.title for a in plan.actions[1:]], ["B", "C", "D"]
        )
        self.assertEqual(plan.actions[3].depends_on, [create.id])

    def test_branch_binding_retargets(self) -> None:
        self.tracked_stack()
        self.b.bindings.set(CommitIdentity("B"), BaseRef.branch("release"))
        plan = self.b.plan()
        self.assertEqual(kinds(plan), ["retarget", "update-head"])
        self.assertEqual(str(plan.actions[0].base), "release")  # type: ignore[attr-defined]
        self.assertEqual(plan.actions[1].commit.title, "C")

    def test_new_content_on_new_base(self) -> None:
        self.tracked_stack()
        self.b.bindings.set(CommitIdentity("C"), BaseRef.branch("main"))
        self.b.commits[2].content_hash = ContentHash("patch-C2")
        plan = self.b.plan()
        self.assertEqual(kinds(plan), ["update-head", "retarget"])
        update, retarget = list(plan)
        assert isinstance(update, stacksync.plan.UpdateHead)
        self.assertEqual(update.reason, "content")
        self.assertEqual(str(update.base), "main")
        self.assertEqual(retarget.depends_on, [update.id])

    def test_explicit_base_wins_over_binding(self) -> None:
        self.tracked_stack()
        c = self.b.commits[2]
        plan = self.b.plan(bases={c.oid: BaseRef.commit(CommitIdentity("A"))})
        self.assertEqual(kinds(plan), ["retarget"])
        self.assertEqual(plan.actions[0].base.commit.title, "A")  # type: ignore[attr-defined]

    def test_unbound_follows_current_base(self) -> None:
        b = StackBuilder()
        b.commit("A")
        b.commit("B")
        b.pr("A", "main")
        b.pr("B", "main")
        # No bindings: B keeps the base it has on GitHub
        self.assertTrue(b.plan().empty)

    def test_binding_to_commit_above_is_invalid(self) -> None:
        self.tracked_stack()
        self.b.bindings.set(CommitIdentity("A"), BaseRef.commit(CommitIdentity("C")))
        with self.assertRaises(InvalidBaseError):
            self.b.plan()

    def test_unselected_commits(self) -> None:
        self.b.commit("A", tracked=False)
        b = self.b.commit("B", tracked=False)
        plan = self.b.plan(create={b.oid})
        self.assertEqual(kinds(plan), ["create"])
        self.assertEqual(str(plan.actions[0].base), "main")  # type: ignore[attr-defined]
        self.assertEqual(len(plan.notes), 1)

    def test_pending_commit_base(self) -> None:
        a = self.b.commit("A", tracked=False)
        self.b.commit("B", tracked=False)
        c = self.b.commit("C", tracked=False)
        plan = self.b.plan(bases={c.oid: BaseRef.pending_commit(a.oid)})
        create_a, create_b, create_c = list(plan)
        self.assertEqual(create_c.depends_on, [create_a.id])
        self.assertIs(create_c.base.commit, a)  # type: ignore[attr-defined]

    def test_creates_before_retargets(self) -> None:
        self.b.commit("A")
        self.b.commit("B", tracked=False)
        self.b.commit("C")
        self.b.pr("A", "main")
        self.b.pr("C", branch_of("A"))
        self.b.bindings.set(CommitIdentity("C"), BaseRef.stacked())
        plan = self.b.plan()
        # C now sits on the new pull request of B
        self.assertEqual(kinds(plan), ["create", "retarget"])
        self.assertEqual(plan.actions[1].depends_on, [plan.actions[0].id])


class TestOrder(unittest.TestCase):
    def test_phases_then_position(self) -> None:
        b = StackBuilder()
        a = b.commit("A")
        c = b.commit("B")
        pr_a = b.pr("A", "main")
        pr_b = b.pr("B", "main")
        label = stacksync.plan.AddLabel(a, pull_request=pr_a, label="x")
        meta = stacksync.plan.UpdateMetadata(c, pull_request=pr_b, title="t", body="")
        retarget = stacksync.plan.RetargetBase(
            c, pull_request=pr_b, base=stacksync.plan.BaseTarget(branch="main")
        )
        head = stacksync.plan.UpdateHead(
            c, pull_request=pr_b, base=stacksync.plan.BaseTarget(branch="main"), reason="content"
        )
        actions = [label, meta, retarget, head]
        r = stacksync.plan.order(actions, {id(x): [] for x in actions})
        self.assertEqual(
            [x.kind for x in r], ["update-head", "retarget", "update-metadata", "add-label"]
        )
        self.assertEqual([x.id for x in r], [1, 2, 3, 4])

    def test_dependency_beats_phase(self) -> None:
        b = StackBuilder()
        a = b.commit("A")
        c = b.commit("B")
        pr_a = b.pr("A", "main")
        pr_b = b.pr("B", "main")
        retarget = stacksync.plan.RetargetBase(
            a, pull_request=pr_a, base=stacksync.plan.BaseTarget(branch="release")
        )
        head = stacksync.plan.UpdateHead(
            c, pull_request=pr_b, base=stacksync.plan.BaseTarget(commit=a), reason="restack"
        )
        r = stacksync.plan.order([retarget, head], {id(retarget): [], id(head): [retarget]})
        self.assertEqual(r, [retarget, head])
        self.assertEqual(head.depends_on, [1])


if __name__ == "__main__":
    unittest.main()
