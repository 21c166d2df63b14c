#!/usr/bin/env python3

import logging
import os
import subprocess
from typing import IO, Any, Dict, Optional, Sequence, Union, overload


# What a command returns: its stdout as str normally, a bool with
# exitcode=True, and None when stdout was not captured.
_SHELL_RET = Union[bool, str, None]


_HANDLE = Union[None, int, IO[Any]]


# Start of the clock in testing mode (an April 2005 timestamp)
TESTING_EPOCH = 1112911993

# Environment git runs with in testing mode, so that hashes and dates
# come out the same on every run.
TESTING_GIT_ENV = {
    "EDITOR": ":",
    "GIT_MERGE_AUTOEDIT": "no",
    "LANG": "C",
    "LC_ALL": "C",
    "PAGER": "cat",
    "TZ": "UTC",
    "TERM": "dumb",
    "GIT_AUTHOR_EMAIL": "author@example.com",
    "GIT_AUTHOR_NAME": "A U Thor",
    "GIT_COMMITTER_EMAIL": "committer@example.com",
    "GIT_COMMITTER_NAME": "C O Mitter",
}


class ShellError(RuntimeError):
    """
    A command run by the shell exited with a nonzero exit code.
    """

    args_run: Sequence[str]
    returncode: int
    # Captured stderr of the command; empty unless stderr was piped
    stderr: str

    def __init__(self, args: Sequence[str], returncode: int, stderr: str) -> None:
        super().__init__(
            "{} failed with exit code {}".format(" ".join(args), returncode)
            + ("\n" + stderr.rstrip() if stderr.strip() else "")
        )
        self.args_run = args
        self.returncode = returncode
        self.stderr = stderr


def log_command(args: Sequence[str]) -> None:
    """
    Log a command line so that it can be pasted back into a terminal.
    """
    logging.info("$ " + subprocess.list2cmdline(args).replace("\n", "\\n"))


class Shell(object):
    """
    Runs commands in a fixed working directory and logs them.  In testing
    mode git sees a fake clock and fixed identities, which makes the
    commits it writes reproducible.
    """

    # Directory commands run in
    cwd: str

    # Don't log the commands we run
    quiet: bool

    testing: bool

    # Fake Unix time git sees in testing mode; see test_tick
    testing_time: int

    def __init__(
        self, quiet: bool = False, cwd: Optional[str] = None, testing: bool = False
    ):
        self.cwd = cwd if cwd else os.getcwd()
        self.quiet = quiet
        self.testing = testing
        self.testing_time = TESTING_EPOCH

    def sh(
        self,
        *args: str,
        env: Optional[Dict[str, str]] = None,
        stderr: _HANDLE = None,
        input: Optional[str] = None,
        stdin: _HANDLE = None,
        stdout: _HANDLE = subprocess.PIPE,
        exitcode: bool = False
    ) -> _SHELL_RET:
        """
        Run args and return what it wrote to stdout.

        Args:
            env: extra environment variables, added to ours rather than
                replacing them
            stderr: where stderr goes; our own stderr unless given.  Pipe
                it to have it carried on the ShellError.
            input: text fed to stdin; not together with stdin
            stdin: where stdin comes from
            stdout: where stdout goes; captured and returned unless given
            exitcode: return whether the command exited with 0 instead of
                its output, and never raise
        """
        assert not (stdin and input)
        if input is not None:
            stdin = subprocess.PIPE
        if not self.quiet:
            log_command(args)
        full_env = None
        if env is not None:
            full_env = dict(os.environ)
            full_env.update(env)
        p = subprocess.Popen(
            args, stdout=stdout, stdin=stdin, stderr=stderr, cwd=self.cwd, env=full_env
        )
        out, err = p.communicate(None if input is None else input.encode("utf-8"))

        err_text = "" if err is None else err.decode(errors="replace")
        # Shown at info level; git explains its failures on stderr
        if err_text.strip():
            logging.info(err_text.rstrip())

        if exitcode:
            logging.debug("Exit code: {}".format(p.returncode))
            return p.returncode == 0
        if p.returncode != 0:
            raise ShellError(args, p.returncode, err_text)
        if out is None:
            return None
        r = out.decode()
        logging.debug(r.replace("\0", "\\0"))
        return r

    @overload  # noqa: F811
    def git(self, *args: str) -> str:
        ...

    @overload  # noqa: F811
    def git(self, *args: str, input: str) -> str:
        ...

    @overload  # noqa: F811
    def git(self, *args: str, **kwargs: Any) -> _SHELL_RET:
        ...

    def git(self, *args: str, **kwargs: Any) -> _SHELL_RET:  # noqa: F811
        """
        Run git with args (and any keyword arguments sh() takes).  Output
        comes back with trailing whitespace stripped.
        """
        if self.testing:
            env = kwargs.setdefault("env", {})
            for k, v in TESTING_GIT_ENV.items():
                env.setdefault(k, v)
            date = "{} -0700".format(self.testing_time)
            env.setdefault("GIT_AUTHOR_DATE", date)
            env.setdefault("GIT_COMMITTER_DATE", date)
            kwargs.setdefault("stderr", subprocess.PIPE)

        r = self.sh("git", *args, **kwargs)
        return r.rstrip() if isinstance(r, str) else r

    def test_tick(self) -> None:
        """
        Advance the testing clock by a minute.
        """
        self.testing_time += 60

    def open(self, fn: str, mode: str) -> IO[Any]:
        """
        Open fn relative to the working directory.
        """
        return open(os.path.join(self.cwd, fn), mode)
