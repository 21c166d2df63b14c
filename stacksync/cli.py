import contextlib
import logging
import sys
from typing import Generator, List, Optional, Tuple

import click

import stacksync
import stacksync.bind
import stacksync.config
import stacksync.github_real
import stacksync.land
import stacksync.logs
import stacksync.queue
import stacksync.shell
import stacksync.status
import stacksync.sync
from stacksync.errors import StackSyncError
from stacksync.retry import RetryPolicy
from stacksync.selector import DefaultSelector, Selector, TerminalSelector
from stacksync.session import Session

EXIT_STACK = contextlib.ExitStack()

# Exit statuses
SUCCESS = 0
PARTIAL_FAILURE = 1
HARD_FAILURE = 2

StackSyncContext = Tuple[Session, stacksync.config.Config]


@contextlib.contextmanager
def cli_context() -> Generator[StackSyncContext, None, None]:
    with EXIT_STACK:
        try:
            shell = stacksync.shell.Shell()
            config = stacksync.config.read_config()
            github = stacksync.github_real.RealGitHubEndpoint(
                oauth_token=config.github_oauth,
                proxy=config.proxy,
                github_url=config.github_url,
            )
            session = Session(
                username=config.github_username,
                github=github,
                sh=shell,
                github_url=config.github_url,
                remote_name=config.remote_name,
                trunk_opt=config.trunk,
                branch_prefix=config.branch_prefix,
                retry=RetryPolicy(
                    max_attempts=config.max_attempts,
                    initial_backoff=config.initial_backoff,
                ),
            )
            yield session, config
        except StackSyncError as e:
            # Nothing was changed; say why and get out
            logging.error(str(e))
            stacksync.logs.record_exception(e)
            sys.exit(HARD_FAILURE)
        except RuntimeError as e:
            logging.debug("Unexpected failure", exc_info=True)
            logging.error("{}: {}".format(type(e).__name__, e))
            stacksync.logs.record_exception(e)
            sys.exit(HARD_FAILURE)


def selector() -> Selector:
    if sys.stdin.isatty() and sys.stdout.isatty():
        return TerminalSelector()
    return DefaultSelector()


@click.group(invoke_without_command=True)
@click.pass_context
@click.version_option(stacksync.__version__, "--version", "-V")
@click.option("--debug", is_flag=True, help="Log debug information to stderr")
# hidden arguments that we'll pass along to sync if no other command given
@click.option("--message", "-m", default="Update", hidden=True)
@click.option("--update-message", is_flag=True, hidden=True)
@click.option("--draft", is_flag=True, hidden=True)
@click.option("--label", "labels", multiple=True, hidden=True)
@click.option("--base", hidden=True)
@click.option("--pick", is_flag=True, hidden=True)
@click.option("--dry-run", is_flag=True, hidden=True)
def main(
    ctx: click.Context,
    debug: bool,
    message: str,
    update_message: bool,
    draft: bool,
    labels: List[str],
    base: Optional[str],
    pick: bool,
    dry_run: bool,
) -> None:
    """
    Keep a stack of commits in sync with a stack of GitHub pull requests
    """
    EXIT_STACK.enter_context(stacksync.logs.manager(debug=debug))

    if not ctx.invoked_subcommand:
        return ctx.invoke(
            sync,
            message=message,
            update_message=update_message,
            draft=draft,
            labels=labels,
            base=base,
            pick=pick,
            dry_run=dry_run,
        )


@main.command("sync")
@click.option(
    "--message",
    "-m",
    default="Update",
    help="Message of the commits that update existing pull requests",
)
@click.option(
    "--update-message",
    is_flag=True,
    help="Update pull request titles and descriptions from the local commits",
)
@click.option("--draft", is_flag=True, help="Create new pull requests as drafts")
@click.option(
    "--label",
    "labels",
    multiple=True,
    metavar="LABEL",
    help="Make sure every pull request of the stack has this label",
)
@click.option(
    "--base",
    metavar="BASE",
    help="Base of the top commit: a branch, or HEAD^N for the commit N below it",
)
@click.option("--pick", is_flag=True, help="Choose which new commits to submit")
@click.option("--dry-run", is_flag=True, help="Print what would be done and stop")
def sync(
    message: str,
    update_message: bool,
    draft: bool,
    labels: List[str],
    base: Optional[str],
    pick: bool,
    dry_run: bool,
) -> None:
    """
    Create or update the pull requests of the stack
    """
    with cli_context() as (session, config):
        r = stacksync.sync.main(
            session=session,
            message=message,
            update_mode=config.update_mode,
            update_metadata=update_message or config.update_metadata,
            draft=draft,
            labels=labels,
            base=base,
            pick=pick,
            dry_run=dry_run,
            selector=selector(),
        )
    sys.exit(SUCCESS if r.ok else PARTIAL_FAILURE)


@main.command("land")
@click.option(
    "--all", "land_all", is_flag=True, help="Land the stack bottom-up, up to REV"
)
@click.argument("rev", metavar="REV", required=False)
def land(land_all: bool, rev: Optional[str]) -> None:
    """
    Merge the bottom pull request and retarget what was stacked on it
    """
    with cli_context() as (session, config):
        outcomes = stacksync.land.main(
            session=session,
            rev=rev,
            land_all=land_all,
            update_mode=config.update_mode,
            merge_method=config.merge_method,
        )
    sys.exit(stacksync.land.exit_status(outcomes))


@main.command("queue")
@click.argument("rev", metavar="REV", required=False)
def queue(rev: Optional[str]) -> None:
    """
    Label the pull requests of the stack for the merge queue
    """
    with cli_context() as (session, config):
        result = stacksync.queue.main(
            session=session, label=config.queue_label, rev=rev
        )
    sys.exit(SUCCESS if result.ok else PARTIAL_FAILURE)


@main.command("bind")
@click.argument("rev", metavar="REV")
@click.argument("base", metavar="BASE")
def bind(rev: str, base: str) -> None:
    """
    Set the base a commit's pull request is reviewed against
    """
    with cli_context() as (session, _):
        stacksync.bind.main(session=session, rev=rev, base=base)


@main.command("status")
def status() -> None:
    """
    Show the stack and its pull requests
    """
    with cli_context() as (session, _):
        stacksync.status.main(session=session)
