#!/usr/bin/env python3

import dataclasses
from dataclasses import dataclass
from typing import Callable, Optional, Set

import stacksync.github
import stacksync.identity
import stacksync.shell
from stacksync.bindings import COMMIT, BindingStore
from stacksync.errors import InputError
from stacksync.execute import ExecuteOptions, PlanExecutor
from stacksync.git import GitRepository
from stacksync.host import GitHubHost
from stacksync.remote_index import RemoteIndex
from stacksync.retry import RetryPolicy
from stacksync.stack import Commit, Stack, read_stack
from stacksync.types import CommitIdentity


@dataclass
class Session:
    """
    Everything a command needs to know about where it is running: the
    local repository, the GitHub repository it submits to, and the
    binding table.  Commands read the stack and the remote index through
    here, once each.
    """

    # ---------------------------
    # Direct arguments

    # GitHub username; namespaces the head branches we create
    username: str

    # Endpoint to access GitHub
    github: stacksync.github.GitHubEndpoint

    # Shell inside the git checkout we are working on
    sh: stacksync.shell.Shell = dataclasses.field(default_factory=stacksync.shell.Shell)

    # Owner and name of the GitHub repository; worked out from the
    # remote URL when not given
    repo_owner_opt: Optional[str] = None
    repo_name_opt: Optional[str] = None

    # GitHub url (normally github.com)
    github_url: str = "github.com"

    # Name of the upstream remote (normally origin)
    remote_name: str = "origin"

    # Trunk branch; the repository's default branch when not given
    trunk_opt: Optional[str] = None

    branch_prefix: str = "stack/"

    retry: RetryPolicy = dataclasses.field(default_factory=RetryPolicy)

    # ~~~~~~~~~~~~~~~~~~~~~~~~
    # Computed in post init

    repo: GitRepository = dataclasses.field(init=False)

    host: GitHubHost = dataclasses.field(init=False)

    trunk: str = dataclasses.field(init=False)

    bindings: BindingStore = dataclasses.field(init=False)

    def __post_init__(self) -> None:
        self.repo = GitRepository(self.sh, self.remote_name)
        self.repo.check_repository()
        self.host = GitHubHost.connect(
            self.github,
            self.sh,
            github_url=self.github_url,
            remote_name=self.remote_name,
            repo_owner=self.repo_owner_opt,
            repo_name=self.repo_name_opt,
        )
        self.trunk = self.trunk_opt or self.host.default_branch
        self.bindings = BindingStore.for_repository(self.repo.common_dir)

    def read_stack(self) -> Stack:
        """
        Fetch, then read the commits between trunk and HEAD.
        """
        self.repo.fetch()
        trunk_ref = "{}/{}".format(self.remote_name, self.trunk)
        if self.repo.remote_branch(self.trunk) is None:
            raise InputError(
                "{} does not exist; set 'trunk' in .stacksyncrc to the branch "
                "your stacks are based on".format(trunk_ref)
            )
        root = self.repo.merge_base(trunk_ref, "HEAD")
        return read_stack(self.repo, root, trunk=self.trunk)

    def load_index(self, stack: Stack) -> RemoteIndex:
        """
        Pull requests of the stack, plus those of the commits outside of
        it that some commit of the stack is bound to.
        """
        identities: Set[CommitIdentity] = set(stack.identities())
        for i in stack.identities():
            ref = self.bindings.get(i)
            if ref is not None and ref.kind == COMMIT and ref.value is not None:
                identities.add(CommitIdentity(ref.value))
        return RemoteIndex.load(
            self.host,
            self.repo,
            identities,
            branch_prefix=self.branch_prefix,
            username=self.username,
            retry=self.retry,
        )

    def executor(
        self,
        stack: Stack,
        *,
        update_mode: str = "cherry-pick",
        message: str = "Update",
        identity_factory: Callable[[], CommitIdentity] = stacksync.identity.new_identity,
    ) -> PlanExecutor:
        return PlanExecutor(
            repo=self.repo,
            host=self.host,
            bindings=self.bindings,
            stack=stack,
            options=ExecuteOptions(
                username=self.username,
                branch_prefix=self.branch_prefix,
                update_mode=update_mode,
                message=message,
            ),
            retry=self.retry,
            identity_factory=identity_factory,
        )

    def commit_of(self, stack: Stack, rev: str) -> Commit:
        """
        The commit of the stack rev names.
        """
        oid = self.repo.resolve(rev)
        c = stack.by_oid(oid)
        if c is None:
            raise InputError(
                "{} is not part of the current stack ({}/{}..HEAD)".format(
                    rev, self.remote_name, self.trunk
                )
            )
        return c

    def save(self) -> None:
        self.bindings.save()
