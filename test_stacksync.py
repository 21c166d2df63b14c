#!/usr/bin/env python3

import os
import shutil
import tempfile
import unittest
from typing import Any, List

import expecttest

import stacksync.bind
import stacksync.github_fake
import stacksync.land
import stacksync.queue
import stacksync.selector
import stacksync.shell
import stacksync.status
import stacksync.sync
from stacksync.bindings import BaseRef, BindingStore
from stacksync.errors import (
    DuplicateIdentityError,
    InvalidBaseError,
    InvalidRangeError,
    NonLinearStackError,
    RemoteUnavailableError,
    StaleStateError,
    TransientRemoteError,
)
from stacksync.execute import APPLIED, FAILED
from stacksync.retry import RetryPolicy
from stacksync.session import Session
from stacksync.types import CommitIdentity, GitHubNumber

# Set to keep the temporary repositories around for inspection
GH_KEEP_TMP = os.getenv("GH_KEEP_TMP")


class TestStackSync(expecttest.TestCase):
    github: stacksync.github_fake.FakeGitHubEndpoint
    upstream_sh: stacksync.shell.Shell
    sh: stacksync.shell.Shell
    minted: int
    max_attempts: int

    def setUp(self) -> None:
        # A bare "upstream" repository backing the fake GitHub, and a
        # clone of it that we operate on
        upstream_dir = self.tempdir()
        self.upstream_sh = stacksync.shell.Shell(cwd=upstream_dir, testing=True)
        self.github = stacksync.github_fake.FakeGitHubEndpoint(self.upstream_sh)

        local_dir = self.tempdir()
        self.sh = stacksync.shell.Shell(cwd=local_dir, testing=True)
        self.sh.git("clone", upstream_dir, ".")

        self.minted = 0
        self.max_attempts = 4

    def tempdir(self) -> str:
        d = tempfile.mkdtemp()
        if GH_KEEP_TMP:
            self.addCleanup(lambda: print("preserved at: {}".format(d)))
        else:
            self.addCleanup(lambda: shutil.rmtree(d, ignore_errors=True))
        return d

    # ---------------------------------------------------------------

    def identity(self) -> CommitIdentity:
        self.minted += 1
        return CommitIdentity("id{}".format(self.minted))

    def session(self) -> Session:
        return Session(
            username="octocat",
            github=self.github,
            sh=self.sh,
            repo_owner_opt="octo-org",
            repo_name_opt="octo-repo",
            retry=RetryPolicy(max_attempts=self.max_attempts, sleep=lambda _: None),
        )

    def sync(self, **kwargs: Any) -> stacksync.sync.SyncResult:
        return stacksync.sync.main(
            session=self.session(), identity_factory=self.identity, **kwargs
        )

    def land(self, **kwargs: Any) -> List[stacksync.land.LandingOutcome]:
        return stacksync.land.main(session=self.session(), **kwargs)

    def writeFileAndAdd(self, filename: str, contents: str) -> None:
        with self.sh.open(filename, "w") as f:
            f.write(contents)
        self.sh.git("add", filename)

    def commit(self, name: str, message: str = "") -> None:
        """
        Commit a new file named after the commit.
        """
        self.writeFileAndAdd("{}.txt".format(name), "{}\n".format(name))
        self.sh.git("commit", "-m", message or name)
        self.sh.test_tick()

    def amend(self, name: str, contents: str) -> None:
        self.writeFileAndAdd("{}.txt".format(name), contents)
        self.sh.git("commit", "--amend", "--no-edit")
        self.sh.test_tick()

    def message(self, rev: str = "HEAD") -> str:
        return self.sh.git("log", "-1", "--format=%B", rev)

    def pr(self, number: int) -> stacksync.github_fake.PullRequest:
        repo = self.github.state.repository("octo-org", "octo-repo")
        return self.github.state.pull_request(repo, GitHubNumber(number))

    def dump_github(self) -> str:
        lines = []
        for pr in sorted(self.github.state.pull_requests.values(), key=lambda p: p.number):
            lines.append(
                "#{} {} {} -> {}: {}".format(
                    pr.number, pr.state, pr.headRefName, pr.baseRefName, pr.title
                )
            )
        return "\n".join(lines)

    def diff(self, base: str, head: str) -> str:
        """
        Files a pull request from head onto base shows as changed.
        """
        return self.upstream_sh.git("diff", "--name-only", "{}...{}".format(base, head))

    def kinds(self, r: stacksync.sync.SyncResult) -> List[str]:
        return [a.kind for a in r.plan]

    def sync_stack(self) -> None:
        self.commit("A")
        self.commit("B")
        self.commit("C")
        r = self.sync()
        self.assertTrue(r.ok)

    # ---------------------------------------------------------------

    def test_create_stack(self) -> None:
        self.commit("A")
        self.commit("B")
        self.commit("C")
        r = self.sync()
        self.assertTrue(r.ok)
        assert r.result is not None
        self.assertEqual([o.status for o in r.result.outcomes], [APPLIED] * 3)
        self.assertExpectedInline(
            self.dump_github(),
            """\
#500 OPEN stack/octocat/id1 -> main: A
#501 OPEN stack/octocat/id2 -> stack/octocat/id1: B
#502 OPEN stack/octocat/id3 -> stack/octocat/id2: C""",
        )
        # Every pull request shows exactly its own commit
        self.assertEqual(self.diff("main", "stack/octocat/id1"), "A.txt")
        self.assertEqual(self.diff("stack/octocat/id1", "stack/octocat/id2"), "B.txt")
        self.assertEqual(self.diff("stack/octocat/id2", "stack/octocat/id3"), "C.txt")
        self.assertExpectedInline(
            self.message(),
            """\
C

Stack-Id: id3
Pull-Request: https://github.com/octo-org/octo-repo/pull/502""",
        )
        self.assertIn("Stack-Id: id1", self.message("HEAD~2"))
        # The working tree is left alone
        self.assertEqual(self.sh.git("status", "--porcelain"), "")

    def test_sync_is_idempotent(self) -> None:
        self.sync_stack()
        n = len(self.github.requests)
        r = self.sync()
        self.assertTrue(r.plan.empty)
        self.assertTrue(r.ok)
        self.assertEqual(len(self.github.requests), n)

    def test_dry_run(self) -> None:
        self.commit("A")
        self.commit("B")
        head = self.sh.git("rev-parse", "HEAD")
        r = self.sync(dry_run=True)
        self.assertIsNone(r.result)
        self.assertEqual(self.kinds(r), ["create", "create"])
        self.assertEqual(self.github.state.pull_requests, {})
        self.assertEqual(self.github.requests, [])
        self.assertEqual(self.sh.git("rev-parse", "HEAD"), head)

    def test_update_content(self) -> None:
        self.sync_stack()
        old = self.upstream_sh.git("rev-parse", "stack/octocat/id3")
        self.amend("C", "C, second try\n")
        r = self.sync()
        self.assertEqual(self.kinds(r), ["update-head"])
        self.assertTrue(r.ok)
        # The update is a new commit on top of what was reviewed
        self.assertEqual(self.upstream_sh.git("rev-parse", "stack/octocat/id3^"), old)
        self.assertEqual(
            self.upstream_sh.git("show", "stack/octocat/id3:C.txt"), "C, second try"
        )
        self.assertEqual(
            self.upstream_sh.git("log", "-1", "--format=%s", "stack/octocat/id3"), "Update"
        )
        self.assertTrue(self.sync().plan.empty)

    def test_update_content_rebase_mode(self) -> None:
        self.sync_stack()
        self.amend("C", "C, second try\n")
        r = self.sync(update_mode="rebase")
        self.assertEqual(self.kinds(r), ["update-head"])
        # A single commit on the base, carrying the original message
        self.assertEqual(
            self.upstream_sh.git("rev-parse", "stack/octocat/id3^"),
            self.upstream_sh.git("rev-parse", "stack/octocat/id2"),
        )
        self.assertEqual(
            self.upstream_sh.git("log", "-1", "--format=%s", "stack/octocat/id3"), "C"
        )

    def test_reorder(self) -> None:
        self.sync_stack()
        b = self.sh.git("rev-parse", "HEAD~1")
        c = self.sh.git("rev-parse", "HEAD")
        self.sh.git("reset", "--hard", "HEAD~2")
        self.sh.git("cherry-pick", c)
        self.sh.test_tick()
        self.sh.git("cherry-pick", b)
        self.sh.test_tick()

        r = self.sync()
        self.assertEqual(self.kinds(r), ["retarget", "retarget"])
        self.assertTrue(r.ok)
        self.assertExpectedInline(
            self.dump_github(),
            """\
#500 OPEN stack/octocat/id1 -> main: A
#501 OPEN stack/octocat/id2 -> stack/octocat/id3: B
#502 OPEN stack/octocat/id3 -> stack/octocat/id1: C""",
        )
        self.assertEqual(self.diff("stack/octocat/id1", "stack/octocat/id3"), "C.txt")
        self.assertEqual(self.diff("stack/octocat/id3", "stack/octocat/id2"), "B.txt")
        # No new pull requests, no new identities
        self.assertEqual(self.minted, 3)
        self.assertTrue(self.sync().plan.empty)

    def test_removed_commit(self) -> None:
        self.sync_stack()
        self.sh.git("reset", "--hard", "HEAD~1")
        n = len(self.github.requests)
        r = self.sync()
        self.assertTrue(r.plan.empty)
        self.assertEqual(len(self.github.requests), n)
        # Its pull request is left as it was
        self.assertEqual(self.pr(502).state, "OPEN")

    def test_partial_failure(self) -> None:
        self.max_attempts = 2
        self.commit("A")
        self.commit("B")
        self.github.inject_failure(
            "post", r"/pulls$", TransientRemoteError("502 Bad Gateway"), times=2
        )
        # B goes straight onto main, so it does not depend on A
        r = self.sync(base="main")
        self.assertFalse(r.ok)
        assert r.result is not None
        self.assertEqual([o.status for o in r.result.outcomes], [FAILED, APPLIED])
        self.assertExpectedInline(
            self.dump_github(), """#500 OPEN stack/octocat/id2 -> main: B"""
        )
        # Only the commit that got a pull request is stamped
        self.assertNotIn("Stack-Id", self.message("HEAD~1"))
        self.assertIn("Stack-Id: id2", self.message())

        # Running again picks up where we left off
        r = self.sync()
        self.assertEqual(self.kinds(r), ["create"])
        self.assertTrue(r.ok)
        self.assertExpectedInline(
            self.dump_github(),
            """\
#500 OPEN stack/octocat/id2 -> main: B
#501 OPEN stack/octocat/id3 -> main: A""",
        )

    def upstream_branches(self) -> List[str]:
        return self.upstream_sh.git(
            "for-each-ref", "--format=%(refname:short)", "refs/heads"
        ).splitlines()

    def test_failed_create_leaves_no_branch(self) -> None:
        self.max_attempts = 2
        self.commit("A")
        self.github.inject_failure(
            "post", r"/pulls$", TransientRemoteError("502 Bad Gateway"), times=2
        )
        r = self.sync()
        self.assertFalse(r.ok)
        self.assertEqual(self.upstream_branches(), ["main"])

        r = self.sync()
        self.assertTrue(r.ok)
        self.assertEqual(self.upstream_branches(), ["main", "stack/octocat/id2"])
        self.assertExpectedInline(
            self.dump_github(), """#500 OPEN stack/octocat/id2 -> main: A"""
        )

    def test_lost_create_response(self) -> None:
        self.commit("A")
        # GitHub opens the pull request, but we never hear back
        self.github.inject_failure(
            "post", r"/pulls$", TransientRemoteError("Read timed out"), after=True
        )
        r = self.sync()
        self.assertTrue(r.ok)
        self.assertExpectedInline(
            self.dump_github(), """#500 OPEN stack/octocat/id1 -> main: A"""
        )
        self.assertEqual(
            [x for x in self.github.requests if x[0] == "post"],
            [("post", "repos/octo-org/octo-repo/pulls")],
        )
        self.assertIn("Stack-Id: id1", self.message())
        self.assertTrue(self.sync().plan.empty)

    def test_duplicate_identity(self) -> None:
        self.sync_stack()
        # A copy of A, trailers and all
        self.commit("D", self.message("HEAD~2"))
        n = len(self.github.requests)
        with self.assertRaises(DuplicateIdentityError) as cm:
            self.sync()
        self.assertEqual(cm.exception.identity, "id1")
        self.assertEqual(self.github.requests[n:], [])
        self.assertEqual(
            self.upstream_branches(),
            ["main", "stack/octocat/id1", "stack/octocat/id2", "stack/octocat/id3"],
        )

    def test_merge_commit(self) -> None:
        self.commit("A")
        self.sh.git("checkout", "-q", "-b", "side", "origin/main")
        self.commit("B")
        self.sh.git("checkout", "-q", "-")
        self.sh.git("merge", "-q", "--no-ff", "-m", "Merge side", "side")
        with self.assertRaises(NonLinearStackError):
            self.sync()
        self.assertEqual(self.github.requests, [])
        self.assertEqual(self.upstream_branches(), ["main"])

    def test_unrelated_history(self) -> None:
        self.sh.git("checkout", "-q", "--orphan", "elsewhere")
        self.commit("A")
        with self.assertRaises(InvalidRangeError):
            self.sync()
        self.assertEqual(self.github.requests, [])
        self.assertEqual(self.upstream_branches(), ["main"])

    def test_remote_unavailable(self) -> None:
        self.sync_stack()
        self.amend("C", "C, second try\n")
        n = len(self.github.requests)
        session = self.session()
        self.github.inject_failure(
            "graphql", "", TransientRemoteError("502 Bad Gateway"), times=self.max_attempts
        )
        with self.assertRaises(RemoteUnavailableError):
            stacksync.sync.main(session=session, identity_factory=self.identity)
        self.assertEqual(self.github.requests[n:], [])
        self.assertEqual(
            self.upstream_sh.git("show", "stack/octocat/id3:C.txt"), "C"
        )

    def test_base_of_new_commit(self) -> None:
        self.commit("A")
        self.commit("B")
        self.commit("C")
        self.sync(base="HEAD~2")
        self.assertExpectedInline(
            self.dump_github(),
            """\
#500 OPEN stack/octocat/id1 -> main: A
#501 OPEN stack/octocat/id2 -> stack/octocat/id1: B
#502 OPEN stack/octocat/id3 -> stack/octocat/id1: C""",
        )
        self.assertEqual(self.diff("stack/octocat/id1", "stack/octocat/id3"), "C.txt")

    def test_invalid_base(self) -> None:
        self.commit("A")
        with self.assertRaises(InvalidBaseError):
            self.sync(base="HEAD~0")
        with self.assertRaises(InvalidBaseError):
            self.sync(base="no-such-branch")
        self.assertEqual(self.github.state.pull_requests, {})

    def test_bind(self) -> None:
        self.sync_stack()
        ref = stacksync.bind.main(session=self.session(), rev="HEAD", base="origin/main")
        self.assertEqual(ref, BaseRef.branch("main"))

        r = self.sync()
        self.assertEqual(self.kinds(r), ["retarget"])
        self.assertEqual(self.pr(502).baseRefName, "main")
        self.assertEqual(self.diff("main", "stack/octocat/id3"), "C.txt")

        # The binding sticks when the commit changes
        self.amend("C", "C, second try\n")
        r = self.sync()
        self.assertEqual(self.kinds(r), ["update-head"])
        self.assertEqual(self.pr(502).baseRefName, "main")

        store = BindingStore.load(
            os.path.join(self.sh.cwd, ".git", "stacksync", "bindings.json")
        )
        self.assertEqual(store.get(CommitIdentity("id3")), BaseRef.branch("main"))
        self.assertEqual(store.get(CommitIdentity("id2")), BaseRef.stacked())

    def test_new_content_and_new_base(self) -> None:
        self.sync_stack()
        stacksync.bind.main(session=self.session(), rev="HEAD", base="origin/main")
        self.amend("C", "C, second try\n")

        r = self.sync(dry_run=True)
        self.assertEqual(self.kinds(r), ["update-head", "retarget"])

        r = self.sync()
        self.assertTrue(r.ok)
        self.assertEqual(self.pr(502).baseRefName, "main")
        self.assertEqual(self.diff("main", "stack/octocat/id3"), "C.txt")
        self.assertEqual(
            self.upstream_sh.git("show", "stack/octocat/id3:C.txt"), "C, second try"
        )
        self.assertTrue(self.sync().plan.empty)

    def test_bind_to_commit_below(self) -> None:
        self.sync_stack()
        ref = stacksync.bind.main(session=self.session(), rev="HEAD", base="HEAD~2")
        self.assertEqual(ref, BaseRef.commit(CommitIdentity("id1")))
        r = self.sync()
        self.assertEqual(self.kinds(r), ["retarget"])
        self.assertEqual(self.pr(502).baseRefName, "stack/octocat/id1")

        with self.assertRaises(InvalidBaseError):
            stacksync.bind.main(session=self.session(), rev="HEAD~2", base="HEAD")

    def test_closed_pull_request(self) -> None:
        self.sync_stack()
        self.github.patch("repos/octo-org/octo-repo/pulls/501", state="closed")
        with self.assertRaises(StaleStateError) as cm:
            self.sync()
        self.assertEqual(cm.exception.number, 501)

    def test_merged_outside_of_stacksync(self) -> None:
        self.sync_stack()
        self.github.put("repos/octo-org/octo-repo/pulls/500/merge", merge_method="merge")
        r = self.sync()
        self.assertEqual(self.kinds(r), ["retarget", "update-head"])
        self.assertEqual(len(r.plan.notes), 1)
        self.assertEqual(self.pr(501).baseRefName, "main")

    def test_update_message(self) -> None:
        self.sync_stack()
        msg = self.message()
        self.sh.git("commit", "--amend", "-m", "C, improved\n" + msg.split("\n", 1)[1])
        self.assertTrue(self.sync().plan.empty)
        r = self.sync(update_metadata=True)
        self.assertEqual(self.kinds(r), ["update-metadata"])
        self.assertEqual(self.pr(502).title, "C, improved")

    def test_reviewers_and_labels(self) -> None:
        self.commit("A", "A\n\nReviewers: alice, #core")
        r = self.sync(labels=["stacked"], draft=True)
        self.assertTrue(r.ok)
        self.assertEqual(self.pr(500).reviewers, ["alice", "#core"])
        self.assertEqual(self.pr(500)._labels, ["stacked"])
        self.assertTrue(self.pr(500).isDraft)

    def test_pick(self) -> None:
        class Pick(stacksync.selector.DefaultSelector):
            def choose_commits(self, candidates: Any) -> Any:
                return {c.oid for c in candidates if c.title == "B"}

        self.commit("A")
        self.commit("B")
        r = self.sync(pick=True, selector=Pick())
        self.assertEqual(self.kinds(r), ["create"])
        self.assertExpectedInline(
            self.dump_github(), """#500 OPEN stack/octocat/id1 -> main: B"""
        )

    def test_queue(self) -> None:
        self.sync_stack()
        result = stacksync.queue.main(session=self.session(), label="merge-queue", rev="HEAD~1")
        self.assertTrue(result.ok)
        self.assertEqual(self.pr(500)._labels, ["merge-queue"])
        self.assertEqual(self.pr(501)._labels, ["merge-queue"])
        self.assertEqual(self.pr(502)._labels, [])

    def test_status(self) -> None:
        self.sync_stack()
        self.commit("D")
        out = stacksync.status.main(session=self.session())
        lines = out.splitlines()
        self.assertTrue(lines[0].endswith(" D"))
        self.assertEqual(lines[1], "    not submitted")
        self.assertIn("#502 (open) stack/octocat/id3 -> stack/octocat/id2", out)

    def test_land_bottom(self) -> None:
        self.sync_stack()
        outcomes = self.land()
        self.assertEqual([o.state for o in outcomes], [stacksync.land.CASCADED])
        self.assertEqual(stacksync.land.exit_status(outcomes), 0)
        self.assertExpectedInline(
            self.dump_github(),
            """\
#500 MERGED stack/octocat/id1 -> main: A
#501 OPEN stack/octocat/id2 -> main: B
#502 OPEN stack/octocat/id3 -> stack/octocat/id2: C""",
        )
        self.assertEqual(self.upstream_sh.git("ls-tree", "--name-only", "main"), "A.txt")
        self.assertEqual(
            self.upstream_sh.git("log", "-1", "--format=%s", "main"), "A (#500)"
        )
        # B now shows only itself against the new trunk
        self.assertEqual(self.diff("main", "stack/octocat/id2"), "B.txt")

    def test_land_all(self) -> None:
        self.sync_stack()
        outcomes = self.land(land_all=True)
        self.assertEqual(
            [o.state for o in outcomes], [stacksync.land.CASCADED] * 3
        )
        self.assertEqual(
            [pr.state for pr in self.github.state.pull_requests.values()],
            ["MERGED"] * 3,
        )
        self.assertExpectedInline(
            self.upstream_sh.git("ls-tree", "--name-only", "main"),
            """\
A.txt
B.txt
C.txt""",
        )

    def test_land_out_of_order(self) -> None:
        self.sync_stack()
        outcomes = self.land(rev="HEAD")
        self.assertEqual([o.state for o in outcomes], [stacksync.land.NOT_ELIGIBLE])
        self.assertEqual(stacksync.land.exit_status(outcomes), 2)
        self.assertEqual(self.pr(502).state, "OPEN")

    def test_land_unsynced_changes(self) -> None:
        self.sync_stack()
        self.sh.git("reset", "--hard", "HEAD~2")
        self.amend("A", "A, not pushed\n")
        outcomes = self.land()
        self.assertEqual([o.state for o in outcomes], [stacksync.land.NOT_ELIGIBLE])
        self.assertIn("does not match", outcomes[0].reason or "")

    def test_land_conflict(self) -> None:
        self.sync_stack()
        # Someone else touched the same file on trunk
        other = self.tempdir()
        osh = stacksync.shell.Shell(cwd=other, testing=True)
        osh.git("clone", self.upstream_sh.cwd, ".")
        with osh.open("A.txt", "w") as f:
            f.write("Not A\n")
        osh.git("add", "A.txt")
        osh.git("commit", "-m", "Conflicting")
        osh.git("push", "origin", "HEAD:main")

        outcomes = self.land()
        self.assertEqual([o.state for o in outcomes], [stacksync.land.FAILED])
        self.assertEqual(stacksync.land.exit_status(outcomes), 2)
        self.assertEqual(self.pr(500).state, "OPEN")
        # Merges are never retried
        self.assertEqual(
            [r for r in self.github.requests if r[0] == "put"],
            [("put", "repos/octo-org/octo-repo/pulls/500/merge")],
        )


if __name__ == "__main__":
    unittest.main()
