#!/usr/bin/env python3

import re
from typing import Optional

from typing_extensions import TypedDict

import stacksync.github
import stacksync.shell
from stacksync.types import GitHubRepositoryId

GitHubRepoNameWithOwner = TypedDict(
    "GitHubRepoNameWithOwner",
    {
        "owner": str,
        "name": str,
    },
)


def get_github_repo_name_with_owner(
    *,
    sh: stacksync.shell.Shell,
    github_url: str,
    remote_name: str,
) -> GitHubRepoNameWithOwner:
    # Grovel in remotes to figure it out
    remote_url = sh.git("remote", "get-url", remote_name)
    return parse_remote_url(remote_url, github_url=github_url)


def parse_remote_url(remote_url: str, *, github_url: str) -> GitHubRepoNameWithOwner:
    host = re.escape(github_url)
    patterns = [
        # git@github.com:owner/name.git
        r"^git@{host}:(?P<owner>[^/]+)/(?P<name>.+?)(?:\.git)?/?$",
        # ssh://git@github.com/owner/name.git
        r"^ssh://(?:[^@/]+@)?{host}(?::[0-9]+)?/(?P<owner>[^/]+)/(?P<name>.+?)(?:\.git)?/?$",
        # https://github.com/owner/name.git, possibly with credentials
        r"^https?://(?:[^@/]+@)?{host}/(?P<owner>[^/]+)/(?P<name>.+?)(?:\.git)?/?$",
    ]
    for p in patterns:
        m = re.match(p.format(host=host), remote_url)
        if m:
            return {"owner": m.group("owner"), "name": m.group("name")}
    raise RuntimeError(
        "Couldn't determine repo owner and name from url: {}".format(remote_url)
    )


GitHubRepoInfo = TypedDict(
    "GitHubRepoInfo",
    {
        "name_with_owner": GitHubRepoNameWithOwner,
        "id": GitHubRepositoryId,
        "is_fork": bool,
        "default_branch": str,
    },
)


def get_github_repo_info(
    *,
    github: stacksync.github.GitHubEndpoint,
    sh: stacksync.shell.Shell,
    repo_owner: Optional[str] = None,
    repo_name: Optional[str] = None,
    github_url: str,
    remote_name: str,
) -> GitHubRepoInfo:
    if repo_owner is None or repo_name is None:
        name_with_owner = get_github_repo_name_with_owner(
            sh=sh,
            github_url=github_url,
            remote_name=remote_name,
        )
    else:
        name_with_owner = {"owner": repo_owner, "name": repo_name}

    repo = github.graphql(
        """
        query ($owner: String!, $name: String!) {
            repository(name: $name, owner: $owner) {
                id
                isFork
                defaultBranchRef {
                    name
                }
            }
        }""",
        owner=name_with_owner["owner"],
        name=name_with_owner["name"],
    )["data"]["repository"]

    if repo is None:
        raise RuntimeError(
            "Repository {}/{} not found on {}".format(
                name_with_owner["owner"], name_with_owner["name"], github_url
            )
        )

    return {
        "name_with_owner": name_with_owner,
        "id": repo["id"],
        "is_fork": repo["isFork"],
        "default_branch": repo["defaultBranchRef"]["name"],
    }
