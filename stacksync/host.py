#!/usr/bin/env python3

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

import stacksync.github
import stacksync.github_utils
import stacksync.shell
from stacksync.errors import ConflictError, RemoteError
from stacksync.types import GitCommitHash, GitHubNumber

# Head branches looked up per GraphQL query
CHUNK_SIZE = 50

PULL_REQUEST_FIELDS = """
    number
    url
    title
    body
    state
    isDraft
    baseRefName
    baseRefOid
    headRefName
    headRefOid
    labels(first: 100) {
        nodes {
            name
        }
    }
"""


def pick_pull_request(nodes: Sequence[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """
    Several pull requests can share a head branch (e.g. one was closed and
    another opened).  The open one wins, otherwise the newest.
    """
    if not nodes:
        return None
    return max(nodes, key=lambda n: (n["state"] == "OPEN", n["number"]))


class GitHubHost(object):
    """
    The remote API client: everything stacksync asks of GitHub for one
    repository.  Host-level failures come out as StackSyncErrors naming
    the pull request concerned; TransientRemoteError passes through
    untouched so callers can retry it.
    """

    github: stacksync.github.GitHubEndpoint
    owner: str
    name: str
    default_branch: str

    def __init__(
        self,
        github: stacksync.github.GitHubEndpoint,
        *,
        owner: str,
        name: str,
        default_branch: str,
    ) -> None:
        self.github = github
        self.owner = owner
        self.name = name
        self.default_branch = default_branch

    @staticmethod
    def connect(
        github: stacksync.github.GitHubEndpoint,
        sh: stacksync.shell.Shell,
        *,
        github_url: str,
        remote_name: str,
        repo_owner: Optional[str] = None,
        repo_name: Optional[str] = None,
    ) -> "GitHubHost":
        info = stacksync.github_utils.get_github_repo_info(
            github=github,
            sh=sh,
            repo_owner=repo_owner,
            repo_name=repo_name,
            github_url=github_url,
            remote_name=remote_name,
        )
        return GitHubHost(
            github,
            owner=info["name_with_owner"]["owner"],
            name=info["name_with_owner"]["name"],
            default_branch=info["default_branch"],
        )

    def _repo_path(self, suffix: str) -> str:
        return "repos/{}/{}/{}".format(self.owner, self.name, suffix)

    def _list_chunk(self, branches: Sequence[str]) -> Dict[str, Dict[str, Any]]:
        params = ", ".join("$h{}: String!".format(i) for i in range(len(branches)))
        aliases = "\n".join(
            "h{i}: pullRequests(headRefName: $h{i}, first: 10) "
            "{{ nodes {{ {fields} }} }}".format(i=i, fields=PULL_REQUEST_FIELDS)
            for i in range(len(branches))
        )
        query = """
            query ($owner: String!, $name: String!, {params}) {{
                repository(owner: $owner, name: $name) {{
                    {aliases}
                }}
            }}
        """.format(
            params=params, aliases=aliases
        )
        variables = {"h{}".format(i): b for i, b in enumerate(branches)}
        repo = self.github.graphql(
            query, owner=self.owner, name=self.name, **variables
        )["data"]["repository"]
        r = {}
        for i, b in enumerate(branches):
            pr = pick_pull_request(repo["h{}".format(i)]["nodes"])
            if pr is not None:
                r[b] = pr
        return r

    def list_pull_requests(self, head_branches: Sequence[str]) -> Dict[str, Dict[str, Any]]:
        """
        Pull requests by head branch name; branches without one are absent
        from the result.  One query per CHUNK_SIZE branches, issued
        concurrently.
        """
        branches = list(head_branches)
        if not branches:
            return {}
        chunks = [
            branches[i : i + CHUNK_SIZE] for i in range(0, len(branches), CHUNK_SIZE)
        ]
        if len(chunks) == 1:
            return self._list_chunk(chunks[0])

        async def gather() -> List[Dict[str, Dict[str, Any]]]:
            loop = asyncio.get_running_loop()
            return await asyncio.gather(
                *(loop.run_in_executor(None, self._list_chunk, c) for c in chunks)
            )

        r: Dict[str, Dict[str, Any]] = {}
        for part in asyncio.run(gather()):
            r.update(part)
        return r

    def create_pull_request(
        self, *, head: str, base: str, title: str, body: str, draft: bool = False
    ) -> Tuple[GitHubNumber, str]:
        try:
            r = self.github.post(
                self._repo_path("pulls"),
                title=title,
                head=head,
                base=base,
                body=body,
                draft=draft,
                maintainer_can_modify=True,
            )
        except (stacksync.github.RequestError, stacksync.github.NotFoundError) as e:
            raise RemoteError(
                "Could not create pull request for {} onto {}: {}".format(head, base, e)
            ) from e
        number = GitHubNumber(r["number"])
        logging.debug("Opened #{} for {}".format(number, head))
        return number, r["html_url"]

    def update_pull_request(
        self,
        number: GitHubNumber,
        *,
        base: Optional[str] = None,
        title: Optional[str] = None,
        body: Optional[str] = None,
    ) -> None:
        fields: Dict[str, Any] = {}
        if base is not None:
            fields["base"] = base
        if title is not None:
            fields["title"] = title
        if body is not None:
            fields["body"] = body
        try:
            self.github.patch(self._repo_path("pulls/{}".format(number)), **fields)
        except (stacksync.github.RequestError, stacksync.github.NotFoundError) as e:
            raise RemoteError(
                "Could not update pull request: {}".format(e), number=number
            ) from e

    def merge_pull_request(
        self,
        number: GitHubNumber,
        *,
        method: str,
        sha: GitCommitHash,
        title: str,
        body: str,
    ) -> GitCommitHash:
        try:
            r = self.github.put(
                self._repo_path("pulls/{}/merge".format(number)),
                merge_method=method,
                sha=sha,
                commit_title=title,
                commit_message=body,
            )
        except stacksync.github.RequestError as e:
            # 405: not mergeable (conflicts, failing requirements, draft);
            # 409: head moved since we looked at it
            if e.status in (405, 409):
                raise ConflictError(
                    "GitHub refused to merge: {}".format(e), number=number
                ) from e
            raise RemoteError("Merge failed: {}".format(e), number=number) from e
        except stacksync.github.NotFoundError as e:
            raise RemoteError("Merge failed: {}".format(e), number=number) from e
        return GitCommitHash(r["sha"])

    def add_labels(self, number: GitHubNumber, labels: Sequence[str]) -> None:
        try:
            self.github.post(
                self._repo_path("issues/{}/labels".format(number)), labels=list(labels)
            )
        except (stacksync.github.RequestError, stacksync.github.NotFoundError) as e:
            raise RemoteError("Could not add labels: {}".format(e), number=number) from e

    def request_reviewers(self, number: GitHubNumber, reviewers: Sequence[str]) -> None:
        users = [r for r in reviewers if not r.startswith("#")]
        teams = [r[1:] for r in reviewers if r.startswith("#")]
        try:
            self.github.post(
                self._repo_path("pulls/{}/requested_reviewers".format(number)),
                reviewers=users,
                team_reviewers=teams,
            )
        except (stacksync.github.RequestError, stacksync.github.NotFoundError) as e:
            raise RemoteError(
                "Could not request reviewers: {}".format(e), number=number
            ) from e
