#!/usr/bin/env python3

import configparser
import getpass
import logging
import os
from typing import NamedTuple, Optional

import stacksync.logs

UPDATE_MODES = ("cherry-pick", "rebase")

MERGE_METHODS = ("squash", "merge", "rebase")

Config = NamedTuple(
    "Config",
    [
        # Proxy to use when making connections to GitHub
        ("proxy", Optional[str]),
        # OAuth token to authenticate to GitHub with
        ("github_oauth", Optional[str]),
        # GitHub username; used to namespace branches we create
        ("github_username", str),
        # GitHub host (normally github.com)
        ("github_url", str),
        # Name of the upstream remote (normally origin)
        ("remote_name", str),
        # Trunk branch that stacks are based on and land into.  None
        # means the default branch of the repository.
        ("trunk", Optional[str]),
        # Prefix of the head branches we create, e.g. stack/ gives
        # stack/<username>/<identity>
        ("branch_prefix", str),
        # How heads are updated: "cherry-pick" (fast-forward pushes that
        # keep review history) or "rebase" (force pushes)
        ("update_mode", str),
        # Whether a sync updates PR title/body from the local commit
        # message.  Off by default so edits made on GitHub survive.
        ("update_metadata", bool),
        # Merge method used when landing
        ("merge_method", str),
        # Label added by 'stacksync queue'
        ("queue_label", str),
        # Attempts per remote call on transient failure
        ("max_attempts", int),
        # Seconds to wait before the first retry; doubled every retry
        ("initial_backoff", float),
    ],
)


def read_config(*, prompt: bool = True) -> Config:  # noqa: C901
    config = configparser.ConfigParser()
    config.read([".stacksyncrc", os.path.expanduser("~/.stacksyncrc")])

    write_back = False

    if not config.has_section("stacksync"):
        config.add_section("stacksync")

    # Environment variable overrides config file
    github_oauth = os.getenv("OAUTH_TOKEN")
    if github_oauth is None and config.has_option("stacksync", "github_oauth"):
        github_oauth = config.get("stacksync", "github_oauth")
    if github_oauth is None and prompt:
        github_oauth = getpass.getpass(
            "GitHub OAuth token (make one at "
            "https://github.com/settings/tokens -- "
            "we need repo permissions): "
        ).strip()
        config.set("stacksync", "github_oauth", github_oauth)
        write_back = True
    if github_oauth is not None:
        stacksync.logs.formatter.redact(github_oauth, "<GITHUB_OAUTH>")

    github_username = None
    if config.has_option("stacksync", "github_username"):
        github_username = config.get("stacksync", "github_username")
    if github_username is None:
        if not prompt:
            raise RuntimeError(
                "github_username is not set; add it to the [stacksync] "
                "section of ~/.stacksyncrc"
            )
        github_username = input("GitHub username: ")
        config.set("stacksync", "github_username", github_username)
        write_back = True

    proxy = None
    if config.has_option("stacksync", "proxy"):
        proxy = config.get("stacksync", "proxy")

    github_url = config.get("stacksync", "github_url", fallback="github.com")
    remote_name = config.get("stacksync", "remote_name", fallback="origin")
    trunk = config.get("stacksync", "trunk", fallback=None)
    branch_prefix = config.get("stacksync", "branch_prefix", fallback="stack/")

    update_mode = config.get("stacksync", "update_mode", fallback="cherry-pick")
    if update_mode not in UPDATE_MODES:
        raise RuntimeError(
            "update_mode must be one of {}, not {!r}".format(
                ", ".join(UPDATE_MODES), update_mode
            )
        )

    merge_method = config.get("stacksync", "merge_method", fallback="squash")
    if merge_method not in MERGE_METHODS:
        raise RuntimeError(
            "merge_method must be one of {}, not {!r}".format(
                ", ".join(MERGE_METHODS), merge_method
            )
        )

    update_metadata = config.getboolean(
        "stacksync", "update_metadata", fallback=False
    )
    queue_label = config.get("stacksync", "queue_label", fallback="mergeme")
    max_attempts = config.getint("stacksync", "max_attempts", fallback=4)
    initial_backoff = config.getfloat("stacksync", "initial_backoff", fallback=1.0)

    if write_back:
        with open(os.path.expanduser("~/.stacksyncrc"), "w") as f:
            config.write(f)
        logging.info("NB: configuration saved to ~/.stacksyncrc")

    return Config(
        github_oauth=github_oauth,
        github_username=github_username,
        proxy=proxy,
        github_url=github_url,
        remote_name=remote_name,
        trunk=trunk,
        branch_prefix=branch_prefix,
        update_mode=update_mode,
        update_metadata=update_metadata,
        merge_method=merge_method,
        queue_label=queue_label,
        max_attempts=max_attempts,
        initial_backoff=initial_backoff,
    )
