#!/usr/bin/env python3

import logging
import os
import re
import subprocess
import textwrap
from functools import cached_property
from typing import Dict, List, Optional, Sequence

import stacksync.shell
from stacksync.errors import (
    AmbiguousRangeError,
    ConflictError,
    InvalidRangeError,
    NotARepositoryError,
    RemoteError,
    TransientRemoteError,
)
from stacksync.types import ContentHash, GitCommitHash, GitTreeHash

# Fields of a commit as we ask git log to print them; separated by
# ASCII unit separator, commits separated by NUL (git log -z).
LOG_FORMAT = "%x1f".join(["%H", "%P", "%T", "%an", "%ae", "%ad", "%B"])

# Substrings of git push's stderr that mean the remote refused the
# update because the branch moved underneath us
PUSH_REJECTED = [
    "[rejected]",
    "non-fast-forward",
    "stale info",
    "fetch first",
    "failed to update ref",
]

# ...and ones that mean we never got to talk to the remote properly
PUSH_TRANSIENT = [
    "Could not read from remote repository",
    "unable to access",
    "Connection timed out",
    "Connection reset",
    "The remote end hung up unexpectedly",
    "early EOF",
]


class CommitHeader(object):
    """
    Represents the information extracted from one record of
    `git log -z --format=LOG_FORMAT`
    """

    # The unparsed record
    raw_header: str

    def __init__(self, raw_header: str):
        self.raw_header = raw_header

    @cached_property
    def _fields(self) -> List[str]:
        fields = self.raw_header.split("\x1f", 6)
        assert len(fields) == 7, self.raw_header
        return fields

    @cached_property
    def commit_id(self) -> GitCommitHash:
        return GitCommitHash(self._fields[0])

    @cached_property
    def parents(self) -> List[GitCommitHash]:
        return [GitCommitHash(p) for p in self._fields[1].split()]

    @cached_property
    def tree(self) -> GitTreeHash:
        return GitTreeHash(self._fields[2])

    @cached_property
    def author_name(self) -> str:
        return self._fields[3]

    @cached_property
    def author_email(self) -> str:
        return self._fields[4]

    # Raw format, e.g. "1112911993 -0700"
    @cached_property
    def author_date(self) -> str:
        return self._fields[5]

    @cached_property
    def commit_msg(self) -> str:
        return self._fields[6]

    @cached_property
    def title(self) -> str:
        lines = self.commit_msg.splitlines()
        return lines[0] if lines else ""

    def author_env(self) -> Dict[str, str]:
        return {
            "GIT_AUTHOR_NAME": self.author_name,
            "GIT_AUTHOR_EMAIL": self.author_email,
            "GIT_AUTHOR_DATE": self.author_date,
        }


def split_header(s: str) -> List[CommitHeader]:
    return [CommitHeader(r.lstrip("\n")) for r in s.split("\0") if r.strip()]


# Revision syntax that can never be part of a branch name
RE_REVISION = re.compile(r"^HEAD$|[~^:]|@\{")


def is_revision(name: str) -> bool:
    return bool(RE_REVISION.search(name))


class GitRepository(object):
    """
    The local repository, as seen through the handful of git
    operations stacksync needs.  Everything goes through the Shell, so
    every command is logged.
    """

    sh: stacksync.shell.Shell

    # Name of the remote we fetch from and push to
    remote_name: str

    def __init__(self, sh: stacksync.shell.Shell, remote_name: str = "origin"):
        self.sh = sh
        self.remote_name = remote_name

    def check_repository(self) -> None:
        ok = self.sh.git("rev-parse", "--git-dir", exitcode=True, stderr=subprocess.PIPE)
        if not ok:
            raise NotARepositoryError(
                "{} is not inside a git repository".format(self.sh.cwd)
            )

    @cached_property
    def common_dir(self) -> str:
        """
        The directory shared by all worktrees of this repository, where
        the binding table lives.
        """
        self.check_repository()
        d = self.sh.git("rev-parse", "--path-format=absolute", "--git-common-dir")
        return os.path.join(self.sh.cwd, d)

    def resolve(self, rev: str) -> GitCommitHash:
        try:
            r = self.sh.git(
                "rev-parse", "--verify", "--quiet", rev + "^{commit}",
                stderr=subprocess.PIPE,
            )
        except stacksync.shell.ShellError as e:
            self.check_repository()
            raise AmbiguousRangeError(
                "{} does not name a single commit".format(rev)
            ) from e
        return GitCommitHash(r)

    def current_head(self) -> GitCommitHash:
        return self.resolve("HEAD")

    def commits_in_range(
        self, base: GitCommitHash, head: GitCommitHash
    ) -> List[CommitHeader]:
        """
        Commits reachable from head but not from base, oldest first.
        """
        return split_header(
            self.sh.git(
                "log",
                "--reverse",
                "--topo-order",
                "-z",
                "--date=raw",
                "--format=" + LOG_FORMAT,
                "{}..{}".format(base, head),
            )
        )

    def header(self, rev: str) -> CommitHeader:
        return split_header(
            self.sh.git(
                "log", "-1", "-z", "--date=raw", "--format=" + LOG_FORMAT, rev
            )
        )[0]

    def fetch(self) -> None:
        self.sh.git(
            "fetch",
            "--prune",
            self.remote_name,
            "+refs/heads/*:refs/remotes/{}/*".format(self.remote_name),
        )

    def remote_branch(self, branch: str) -> Optional[GitCommitHash]:
        """
        Tip of branch on the remote as of the last fetch, or None if it
        did not exist.
        """
        try:
            r = self.sh.git(
                "rev-parse",
                "--verify",
                "--quiet",
                "refs/remotes/{}/{}".format(self.remote_name, branch),
            )
        except stacksync.shell.ShellError:
            return None
        return GitCommitHash(r)

    def tree_of(self, rev: str) -> GitTreeHash:
        return GitTreeHash(self.sh.git("rev-parse", rev + "^{tree}"))

    def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        r = self.sh.git("merge-base", "--is-ancestor", ancestor, descendant, exitcode=True)
        assert isinstance(r, bool)
        return r

    def merge_base(self, a: str, b: str) -> GitCommitHash:
        try:
            return GitCommitHash(self.sh.git("merge-base", a, b, stderr=subprocess.PIPE))
        except stacksync.shell.ShellError as e:
            if e.returncode == 1:
                raise InvalidRangeError(
                    "{} and {} have no common history".format(a, b)
                ) from e
            raise

    def content_hash(self, base: str, head: str, *, three_dot: bool = False) -> ContentHash:
        """
        Stable patch id of the changes head makes relative to base.  With
        three_dot, the diff is taken from the merge base of the two, as
        GitHub does for a pull request.  An empty diff hashes to "".
        """
        revs = "{}...{}".format(base, head) if three_dot else "{}..{}".format(base, head)
        diff = self.sh.git("diff", "--no-ext-diff", "--no-color", "--binary", revs)
        if not diff:
            return ContentHash("")
        r = self.sh.git("patch-id", "--stable", input=diff + "\n")
        return ContentHash(r.split()[0] if r else "")

    def merge_trees(self, merge_base: str, ours: str, theirs: str) -> GitTreeHash:
        """
        Three-way merge of trees without touching the working copy.
        Raises ConflictError if the merge does not apply cleanly.
        """
        try:
            r = self.sh.git(
                "merge-tree",
                "--write-tree",
                "--merge-base={}".format(merge_base),
                ours,
                theirs,
            )
        except stacksync.shell.ShellError as e:
            if e.returncode == 1:
                raise ConflictError(
                    "Changes in {} do not apply cleanly on top of {}".format(
                        theirs[:12], ours[:12]
                    )
                ) from e
            raise
        return GitTreeHash(r.splitlines()[0])

    def apply_onto(
        self, commit: CommitHeader, onto: GitCommitHash
    ) -> GitTreeHash:
        """
        The tree of commit's patch applied to onto; this is the cherry
        pick, done purely on trees.
        """
        assert len(commit.parents) == 1
        parent = commit.parents[0]
        if self.tree_of(parent) == self.tree_of(onto):
            return commit.tree
        return self.merge_trees(parent, onto, commit.commit_id)

    def commit_tree(
        self,
        tree: GitTreeHash,
        parents: Sequence[GitCommitHash],
        message: str,
        *,
        author: Optional[CommitHeader] = None,
    ) -> GitCommitHash:
        args: List[str] = ["commit-tree", tree]
        for p in parents:
            args.extend(["-p", p])
        env = author.author_env() if author is not None else {}
        return GitCommitHash(self.sh.git(*args, input=message, env=env))

    def push_branch(
        self,
        branch: str,
        oid: GitCommitHash,
        *,
        expect: Optional[str] = None,
    ) -> None:
        """
        Point branch on the remote at oid.  Without expect the push must
        fast-forward; with expect it is a force push that only succeeds
        if the remote branch is still at expect ("" meaning it must not
        exist yet).

        Raises ConflictError if the remote refused the update,
        TransientRemoteError if we could not reach it, RemoteError for
        anything else.
        """
        ref = "refs/heads/{}".format(branch)
        args = ["push", self.remote_name]
        if expect is not None:
            args.append("--force-with-lease={}:{}".format(ref, expect))
        args.append("{}:{}".format(oid, ref))
        try:
            self.sh.git(*args, stderr=subprocess.PIPE)
        except stacksync.shell.ShellError as e:
            if any(s in e.stderr for s in PUSH_REJECTED):
                raise ConflictError(
                    "Push to {} was rejected; the branch was updated by "
                    "someone else.  Fetch, rebase and re-run.".format(branch)
                ) from e
            if any(s in e.stderr for s in PUSH_TRANSIENT):
                raise TransientRemoteError(
                    "Could not push to {}: {}".format(branch, e.stderr.strip())
                ) from e
            raise RemoteError(
                "Push to {} failed: {}".format(branch, e.stderr.strip())
            ) from e

    def delete_branch(self, branch: str, *, expect: str) -> None:
        """
        Delete branch on the remote, provided it is still at expect.
        """
        ref = "refs/heads/{}".format(branch)
        self.sh.git(
            "push",
            self.remote_name,
            "--force-with-lease={}:{}".format(ref, expect),
            ":{}".format(ref),
            stderr=subprocess.PIPE,
        )

    def rewrite_commit_messages(
        self,
        base: GitCommitHash,
        stack: Sequence[CommitHeader],
        messages: Dict[GitCommitHash, str],
    ) -> GitCommitHash:
        """
        Rebuild stack (which sits on base and ends at HEAD) with new
        messages for the commits named in messages, keeping trees and
        authorship, and move HEAD to the result.  Commits below the first
        rewritten one are reused as is.
        """
        head = base
        rewriting = False
        for s in stack:
            if not rewriting and s.commit_id not in messages:
                # Advance HEAD without reconstructing commit
                head = s.commit_id
                continue
            rewriting = True
            msg = messages.get(s.commit_id, s.commit_msg)
            logging.debug("-- new commit_msg:\n{}".format(textwrap.indent(msg, "   ")))
            head = self.commit_tree(s.tree, [head], msg, author=s)
        if rewriting:
            self.sh.git("reset", "--soft", head)
        return head
