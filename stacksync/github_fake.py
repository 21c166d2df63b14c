#!/usr/bin/env python3

import os.path
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, NewType, Optional, Pattern, Tuple, cast

import graphql
from typing_extensions import TypedDict

import stacksync.github
import stacksync.shell
from stacksync.types import GitHubNumber

GraphQLId = NewType("GraphQLId", str)
GitObjectID = NewType("GitObjectID", str)

UpdatePullRequestInput = TypedDict(
    "UpdatePullRequestInput",
    {
        "base": Optional[str],
        "title": Optional[str],
        "body": Optional[str],
        "state": Optional[str],
    },
    total=False,
)

CreatePullRequestInput = TypedDict(
    "CreatePullRequestInput",
    {
        "base": str,
        "head": str,
        "title": str,
        "body": str,
        "draft": bool,
        "maintainer_can_modify": bool,
    },
    total=False,
)

MergePullRequestInput = TypedDict(
    "MergePullRequestInput",
    {
        "merge_method": str,
        "sha": Optional[str],
        "commit_title": Optional[str],
        "commit_message": Optional[str],
    },
    total=False,
)

GraphQLResolveInfo = Any  # for now


# The "database" for our mock instance
class GitHubState:
    repositories: Dict[GraphQLId, "Repository"]
    pull_requests: Dict[GraphQLId, "PullRequest"]
    _next_id: int
    _next_pull_request_number: Dict[GraphQLId, int]
    root: "Root"
    upstream_sh: stacksync.shell.Shell

    def repository(self, owner: str, name: str) -> "Repository":
        nameWithOwner = "{}/{}".format(owner, name)
        for r in self.repositories.values():
            if r.nameWithOwner == nameWithOwner:
                return r
        raise RuntimeError("unknown repository {}".format(nameWithOwner))

    def pull_request(self, repo: "Repository", number: GitHubNumber) -> "PullRequest":
        for pr in self.pull_requests.values():
            if repo.id == pr._repository and pr.number == number:
                return pr
        raise stacksync.github.NotFoundError(
            "unrecognized pull request #{} in repository {}".format(
                number, repo.nameWithOwner
            )
        )

    def next_id(self) -> GraphQLId:
        r = GraphQLId(str(self._next_id))
        self._next_id += 1
        return r

    def next_pull_request_number(self, repo_id: GraphQLId) -> GitHubNumber:
        r = GitHubNumber(self._next_pull_request_number[repo_id])
        self._next_pull_request_number[repo_id] += 1
        return r

    def ref_oid(self, name: str) -> Optional[GitObjectID]:
        try:
            return GitObjectID(
                self.upstream_sh.git(
                    "rev-parse", "--verify", "--quiet", "refs/heads/{}".format(name)
                )
            )
        except stacksync.shell.ShellError:
            return None

    def __init__(self, upstream_sh: stacksync.shell.Shell) -> None:
        self.repositories = {}
        self.pull_requests = {}
        self._next_id = 5000
        self._next_pull_request_number = {}
        self.root = Root()

        self.repositories[GraphQLId("1000")] = Repository(
            id=GraphQLId("1000"),
            name="octo-repo",
            nameWithOwner="octo-org/octo-repo",
            isFork=False,
            defaultBranch="main",
        )
        self._next_pull_request_number[GraphQLId("1000")] = 500

        # Setup upstream Git repository representing octo-org/octo-repo
        # in the directory specified by upstream_sh.  Pull requests are
        # backed by its branches, and merges really happen in it.
        self.upstream_sh = upstream_sh
        self.upstream_sh.git("init", "--bare")
        tree = self.upstream_sh.git("write-tree")
        commit = self.upstream_sh.git("commit-tree", tree, input="Initial commit")
        self.upstream_sh.git("branch", "-f", "main", commit)
        self.upstream_sh.git("symbolic-ref", "HEAD", "refs/heads/main")


def github_state(info: GraphQLResolveInfo) -> GitHubState:
    context = info.context
    assert isinstance(context, GitHubState)
    return context


@dataclass
class Ref:
    name: str


@dataclass
class Label:
    name: str


@dataclass
class LabelConnection:
    nodes: List[Label]


@dataclass
class Repository:
    id: GraphQLId
    name: str
    nameWithOwner: str
    isFork: bool
    defaultBranch: str

    def defaultBranchRef(self, info: GraphQLResolveInfo) -> Ref:
        return Ref(name=self.defaultBranch)

    def pullRequest(self, info: GraphQLResolveInfo, number: GitHubNumber) -> "PullRequest":
        return github_state(info).pull_request(self, number)

    def pullRequests(
        self,
        info: GraphQLResolveInfo,
        headRefName: Optional[str] = None,
        baseRefName: Optional[str] = None,
        states: Optional[List[str]] = None,
        first: Optional[int] = None,
    ) -> "PullRequestConnection":
        prs = [
            pr
            for pr in github_state(info).pull_requests.values()
            if pr._repository == self.id
            and (headRefName is None or pr.headRefName == headRefName)
            and (baseRefName is None or pr.baseRefName == baseRefName)
            and (states is None or pr.state in states)
        ]
        prs.sort(key=lambda pr: pr.number)
        total = len(prs)
        if first is not None:
            prs = prs[:first]
        return PullRequestConnection(nodes=prs, totalCount=total)


@dataclass
class PullRequest:
    id: GraphQLId
    number: GitHubNumber
    url: str
    title: str
    body: str
    state: str
    isDraft: bool
    baseRefName: str
    headRefName: str
    _repository: GraphQLId  # cycle breaker
    _labels: List[str] = field(default_factory=list)
    # Not exposed over GraphQL; tests inspect these directly
    reviewers: List[str] = field(default_factory=list)
    merge_commit: Optional[GitObjectID] = None

    def repository(self, info: GraphQLResolveInfo) -> Repository:
        return github_state(info).repositories[self._repository]

    def baseRefOid(self, info: GraphQLResolveInfo) -> Optional[GitObjectID]:
        return github_state(info).ref_oid(self.baseRefName)

    def headRefOid(self, info: GraphQLResolveInfo) -> Optional[GitObjectID]:
        return github_state(info).ref_oid(self.headRefName)

    def labels(self, info: GraphQLResolveInfo, first: Optional[int] = None) -> LabelConnection:
        return LabelConnection(nodes=[Label(name=n) for n in self._labels])


@dataclass
class PullRequestConnection:
    nodes: List[PullRequest]
    totalCount: int


class Root:
    def repository(self, info: GraphQLResolveInfo, owner: str, name: str) -> Repository:
        return github_state(info).repository(owner, name)


with open(os.path.join(os.path.dirname(__file__), "github_schema.graphql")) as f:
    GITHUB_SCHEMA = graphql.build_schema(f.read())


class FakeGitHubEndpoint(stacksync.github.GitHubEndpoint):
    """
    An in-memory GitHub for tests: GraphQL queries are executed against
    a bundled subset of the real schema, and the REST endpoints we use
    are emulated on top of a bare upstream repository.
    """

    state: GitHubState

    # (method, path regex, error, after): the next request that matches
    # raises error, instead of being served or, with after, once it has
    # been served.  Consumed in order.
    _failures: List[Tuple[str, Pattern[str], Exception, bool]]

    # Every REST request served, as (method, path); for assertions
    requests: List[Tuple[str, str]]

    def __init__(self, upstream_sh: stacksync.shell.Shell) -> None:
        self.state = GitHubState(upstream_sh)
        self._failures = []
        self.requests = []

    def inject_failure(
        self,
        method: str,
        path: str,
        error: Exception,
        times: int = 1,
        *,
        after: bool = False,
    ) -> None:
        for _ in range(times):
            self._failures.append((method, re.compile(path), error, after))

    def graphql(self, query: str, **kwargs: Any) -> Any:
        self._maybe_fail("graphql", "")
        r = graphql.graphql_sync(
            schema=GITHUB_SCHEMA,
            source=query,
            root_value=self.state.root,
            context_value=self.state,
            variable_values=kwargs,
        )
        if r.errors:
            # The GraphQL implementation loses all the stack traces
            raise RuntimeError(
                "GraphQL query failed with errors:\n\n{}".format(
                    "\n".join(str(e) for e in r.errors)
                )
            )
        # The top-level object isn't indexable by strings, but
        # everything underneath is, oddly enough
        return {"data": r.data}

    def _maybe_fail(self, method: str, path: str, *, after: bool = False) -> None:
        for i, (m, regex, error, a) in enumerate(self._failures):
            if m == method and a == after and regex.search(path):
                del self._failures[i]
                raise error

    def _pr_json(self, pr: PullRequest) -> Dict[str, Any]:
        # This is only a subset of what the actual REST endpoint
        # returns.
        return {
            "number": pr.number,
            "html_url": pr.url,
            "node_id": pr.id,
            "state": "open" if pr.state == "OPEN" else "closed",
            "merged": pr.state == "MERGED",
            "draft": pr.isDraft,
            "title": pr.title,
            "body": pr.body,
            "base": {"ref": pr.baseRefName},
            "head": {"ref": pr.headRefName},
        }

    def _create_pull(
        self, owner: str, name: str, input: CreatePullRequestInput
    ) -> Dict[str, Any]:
        state = self.state
        repo = state.repository(owner, name)
        for b in (input["base"], input["head"]):
            if state.ref_oid(b) is None:
                raise stacksync.github.RequestError(
                    "Validation Failed: branch {} does not exist".format(b), 422
                )
        for other in state.pull_requests.values():
            if other.headRefName == input["head"] and other.state == "OPEN":
                raise stacksync.github.RequestError(
                    "Validation Failed: A pull request already exists for {}".format(
                        input["head"]
                    ),
                    422,
                )
        id = state.next_id()
        number = state.next_pull_request_number(repo.id)
        pr = PullRequest(
            id=id,
            _repository=repo.id,
            number=number,
            url="https://github.com/{}/pull/{}".format(repo.nameWithOwner, number),
            state="OPEN",
            isDraft=bool(input.get("draft", False)),
            baseRefName=input["base"],
            headRefName=input["head"],
            title=input["title"],
            body=input.get("body", ""),
        )
        state.pull_requests[id] = pr
        return self._pr_json(pr)

    def _update_pull(
        self, owner: str, name: str, number: GitHubNumber, input: UpdatePullRequestInput
    ) -> Dict[str, Any]:
        state = self.state
        repo = state.repository(owner, name)
        pr = state.pull_request(repo, number)
        # If I say input.get('title') is not None, mypy
        # is unable to infer input['title'] is not None
        if "title" in input and input["title"] is not None:
            pr.title = input["title"]
        if "base" in input and input["base"] is not None:
            if state.ref_oid(input["base"]) is None:
                raise stacksync.github.RequestError(
                    "Validation Failed: base {} does not exist".format(input["base"]),
                    422,
                )
            pr.baseRefName = input["base"]
        if "body" in input and input["body"] is not None:
            pr.body = input["body"]
        if "state" in input and input["state"] is not None:
            if pr.state == "MERGED":
                raise stacksync.github.RequestError(
                    "Validation Failed: pull request is merged", 422
                )
            pr.state = "CLOSED" if input["state"] == "closed" else "OPEN"
        return self._pr_json(pr)

    def _merge_pull(
        self, owner: str, name: str, number: GitHubNumber, input: MergePullRequestInput
    ) -> Dict[str, Any]:
        state = self.state
        sh = state.upstream_sh
        repo = state.repository(owner, name)
        pr = state.pull_request(repo, number)
        if pr.state != "OPEN" or pr.isDraft:
            raise stacksync.github.RequestError("Pull Request is not mergeable", 405)
        head = state.ref_oid(pr.headRefName)
        base = state.ref_oid(pr.baseRefName)
        assert head is not None and base is not None
        if input.get("sha") is not None and input.get("sha") != head:
            raise stacksync.github.RequestError(
                "Head branch was modified. Review and try the merge again.", 409
            )
        merge_base = sh.git("merge-base", base, head)
        try:
            tree = sh.git(
                "merge-tree", "--write-tree", "--merge-base={}".format(merge_base), base, head
            ).splitlines()[0]
        except stacksync.shell.ShellError:
            raise stacksync.github.RequestError("Pull Request is not mergeable", 405)

        method = input.get("merge_method", "merge")
        title = input.get("commit_title") or "{} (#{})".format(pr.title, pr.number)
        message = title + "\n\n" + (input.get("commit_message") or pr.body)
        parents = ["-p", base]
        if method == "merge":
            parents += ["-p", head]
        # squash and rebase both leave a single new commit on the base
        commit = sh.git("commit-tree", tree, *parents, input=message)
        sh.git("update-ref", "refs/heads/{}".format(pr.baseRefName), commit, base)
        pr.state = "MERGED"
        pr.merge_commit = GitObjectID(commit)
        return {"sha": commit, "merged": True, "message": "Pull Request successfully merged"}

    def _add_labels(
        self, owner: str, name: str, number: GitHubNumber, labels: List[str]
    ) -> List[Dict[str, Any]]:
        pr = self.state.pull_request(self.state.repository(owner, name), number)
        for label in labels:
            if label not in pr._labels:
                pr._labels.append(label)
        return [{"name": n} for n in pr._labels]

    def _request_reviewers(
        self, owner: str, name: str, number: GitHubNumber, input: Dict[str, List[str]]
    ) -> Dict[str, Any]:
        pr = self.state.pull_request(self.state.repository(owner, name), number)
        for r in input.get("reviewers", []):
            pr.reviewers.append(r)
        for t in input.get("team_reviewers", []):
            pr.reviewers.append("#" + t)
        return self._pr_json(pr)

    def rest(self, method: str, path: str, **kwargs: Any) -> Any:
        self._maybe_fail(method, path)
        self.requests.append((method, path))

        routes: List[Tuple[str, str, Callable[..., Any]]] = [
            (
                "post",
                r"^repos/([^/]+)/([^/]+)/pulls$",
                lambda o, n: self._create_pull(o, n, cast(CreatePullRequestInput, kwargs)),
            ),
            (
                "patch",
                r"^repos/([^/]+)/([^/]+)/pulls/([0-9]+)$",
                lambda o, n, num: self._update_pull(
                    o, n, GitHubNumber(int(num)), cast(UpdatePullRequestInput, kwargs)
                ),
            ),
            (
                "put",
                r"^repos/([^/]+)/([^/]+)/pulls/([0-9]+)/merge$",
                lambda o, n, num: self._merge_pull(
                    o, n, GitHubNumber(int(num)), cast(MergePullRequestInput, kwargs)
                ),
            ),
            (
                "post",
                r"^repos/([^/]+)/([^/]+)/issues/([0-9]+)/labels$",
                lambda o, n, num: self._add_labels(
                    o, n, GitHubNumber(int(num)), kwargs.get("labels", [])
                ),
            ),
            (
                "post",
                r"^repos/([^/]+)/([^/]+)/pulls/([0-9]+)/requested_reviewers$",
                lambda o, n, num: self._request_reviewers(
                    o, n, GitHubNumber(int(num)), kwargs
                ),
            ),
        ]
        for m, pattern, handler in routes:
            if m != method:
                continue
            match = re.match(pattern, path)
            if match:
                r = handler(*match.groups())
                self._maybe_fail(method, path, after=True)
                return r
        raise NotImplementedError(
            "FakeGitHubEndpoint REST {} {} not implemented".format(method.upper(), path)
        )
