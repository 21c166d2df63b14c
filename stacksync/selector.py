#!/usr/bin/env python3

import abc
from typing import List, Optional, Sequence, Set

import click

from stacksync.bindings import BaseRef
from stacksync.stack import Commit, Stack
from stacksync.types import GitCommitHash


class Selector(metaclass=abc.ABCMeta):
    """
    Answers the questions a sync may have for the user.  The engine only
    ever sees the answers, so it can be driven without a terminal.
    """

    @abc.abstractmethod
    def choose_commits(self, candidates: Sequence[Commit]) -> Set[GitCommitHash]:
        """
        Which of the untracked candidates should get a pull request.
        """
        pass

    @abc.abstractmethod
    def choose_base(self, commit: Commit, below: Sequence[Commit], trunk: str) -> BaseRef:
        """
        What a new pull request for commit should be based on.  below
        are the commits underneath it, nearest first.
        """
        pass


def base_for_choice(commit: Commit, choice: Optional[Commit], trunk: str) -> BaseRef:
    """
    The BaseRef recording that commit was put on top of choice (None
    meaning trunk).  Choosing the commit right below records "stacked",
    so the pull request keeps following the stack.
    """
    if choice is None:
        return BaseRef.branch(trunk)
    if choice.position == commit.position - 1:
        return BaseRef.stacked()
    if choice.identity is not None:
        return BaseRef.commit(choice.identity)
    return BaseRef.pending_commit(choice.oid)


class DefaultSelector(Selector):
    """
    Every untracked commit, each stacked on the one below it.
    """

    def choose_commits(self, candidates: Sequence[Commit]) -> Set[GitCommitHash]:
        return {c.oid for c in candidates}

    def choose_base(self, commit: Commit, below: Sequence[Commit], trunk: str) -> BaseRef:
        return BaseRef.stacked()


class TerminalSelector(Selector):
    def choose_commits(self, candidates: Sequence[Commit]) -> Set[GitCommitHash]:
        if not candidates:
            return set()
        # Newest on top, like git log
        shown = list(reversed(candidates))
        click.echo("Untracked commits:")
        for i, c in enumerate(shown, start=1):
            click.echo("  [{}] {}".format(i, c.describe()))
        answer = click.prompt(
            "Create pull requests for (numbers separated by spaces, or 'all')",
            default="all",
        )
        if answer.strip() == "all":
            return {c.oid for c in candidates}
        r = set()
        for word in answer.replace(",", " ").split():
            try:
                i = int(word)
            except ValueError:
                raise click.BadParameter("{!r} is not a number".format(word))
            if not 1 <= i <= len(shown):
                raise click.BadParameter("{} is not one of the listed commits".format(i))
            r.add(shown[i - 1].oid)
        return r

    def choose_base(self, commit: Commit, below: Sequence[Commit], trunk: str) -> BaseRef:
        click.echo("Base for the pull request of {}:".format(commit.describe()))
        options: List[Optional[Commit]] = list(below)
        options.append(None)
        for i, c in enumerate(options, start=1):
            click.echo("  [{}] {}".format(i, c.describe() if c is not None else trunk))
        i = click.prompt(
            "Base", type=click.IntRange(1, len(options)), default=1
        )
        return base_for_choice(commit, options[i - 1], trunk)


def untracked(stack: Stack) -> List[Commit]:
    return [c for c in stack if c.identity is None]
