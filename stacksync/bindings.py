#!/usr/bin/env python3

import json
import logging
import os
import tempfile
from dataclasses import dataclass
from typing import Any, Dict, Iterator, Optional, Tuple

from stacksync.types import CommitIdentity, GitCommitHash

BINDINGS_VERSION = 1

BRANCH = "branch"
COMMIT = "commit"
STACKED = "stacked"


@dataclass(frozen=True)
class BaseRef:
    """
    What a pull request should be reviewed and merged against.

    - branch: a literal remote branch, e.g. main or a colleague's
      feature branch
    - commit: the pull request of another commit, by identity
    - stacked: whatever tracked commit currently sits below it in the
      local stack, or trunk at the bottom
    """

    kind: str
    value: Optional[str] = None

    # Only for a commit reference to a commit that is being turned into
    # a pull request in the same run, and so has no identity yet.  Never
    # persisted.
    oid: Optional[GitCommitHash] = None

    @staticmethod
    def branch(name: str) -> "BaseRef":
        return BaseRef(BRANCH, name)

    @staticmethod
    def commit(identity: CommitIdentity) -> "BaseRef":
        return BaseRef(COMMIT, identity)

    @staticmethod
    def pending_commit(oid: GitCommitHash) -> "BaseRef":
        return BaseRef(COMMIT, None, oid)

    @staticmethod
    def stacked() -> "BaseRef":
        return BaseRef(STACKED)

    @property
    def pending(self) -> bool:
        return self.kind == COMMIT and self.value is None

    def with_identity(self, identity: CommitIdentity) -> "BaseRef":
        assert self.pending
        return BaseRef.commit(identity)

    def to_json(self) -> Dict[str, Any]:
        assert not self.pending
        if self.kind == STACKED:
            return {STACKED: True}
        return {self.kind: self.value}

    @staticmethod
    def from_json(d: Dict[str, Any]) -> "BaseRef":
        if d.get(STACKED):
            return BaseRef.stacked()
        if BRANCH in d:
            return BaseRef.branch(d[BRANCH])
        if COMMIT in d:
            return BaseRef.commit(CommitIdentity(d[COMMIT]))
        raise RuntimeError("Unrecognized base binding {!r}".format(d))

    def __str__(self) -> str:
        if self.kind == STACKED:
            return "(stacked)"
        if self.pending:
            assert self.oid is not None
            return "commit {}".format(self.oid[:8])
        return "{} {}".format(self.kind, self.value)


class BindingStore(object):
    """
    The persisted identity -> BaseRef table.  Loaded at the start of a
    command, saved at the end; it is the only state we own besides the
    trailers in commit messages.  Bindings are never dropped implicitly.
    """

    path: Optional[str]
    _bindings: Dict[CommitIdentity, BaseRef]
    dirty: bool

    def __init__(
        self,
        path: Optional[str] = None,
        bindings: Optional[Dict[CommitIdentity, BaseRef]] = None,
    ):
        self.path = path
        self._bindings = dict(bindings) if bindings else {}
        self.dirty = False

    @staticmethod
    def for_repository(common_dir: str) -> "BindingStore":
        return BindingStore.load(os.path.join(common_dir, "stacksync", "bindings.json"))

    @staticmethod
    def load(path: str) -> "BindingStore":
        if not os.path.exists(path):
            return BindingStore(path)
        with open(path, "r") as f:
            data = json.load(f)
        version = data.get("version")
        if version != BINDINGS_VERSION:
            raise RuntimeError(
                "{} has version {}, but this stacksync only understands "
                "version {}; upgrade stacksync".format(path, version, BINDINGS_VERSION)
            )
        bindings = {
            CommitIdentity(k): BaseRef.from_json(v)
            for k, v in data.get("bindings", {}).items()
        }
        logging.debug("Loaded {} base bindings from {}".format(len(bindings), path))
        return BindingStore(path, bindings)

    def get(self, identity: CommitIdentity) -> Optional[BaseRef]:
        return self._bindings.get(identity)

    def set(self, identity: CommitIdentity, ref: BaseRef) -> None:
        assert not ref.pending
        if self._bindings.get(identity) == ref:
            return
        logging.debug("Binding {} to {}".format(identity, ref))
        self._bindings[identity] = ref
        self.dirty = True

    def __contains__(self, identity: object) -> bool:
        return identity in self._bindings

    def items(self) -> Iterator[Tuple[CommitIdentity, BaseRef]]:
        return iter(sorted(self._bindings.items()))

    def save(self) -> None:
        if not self.dirty or self.path is None:
            return
        os.makedirs(os.path.dirname(self.path), exist_ok=True)
        data = {
            "version": BINDINGS_VERSION,
            "bindings": {k: v.to_json() for k, v in self.items()},
        }
        # Write to a temporary file and rename over, so an interrupt
        # never leaves a truncated table behind
        fd, tmp = tempfile.mkstemp(dir=os.path.dirname(self.path), suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(data, f, indent=2, sort_keys=True)
                f.write("\n")
            os.replace(tmp, self.path)
        except BaseException:
            os.unlink(tmp)
            raise
        self.dirty = False
        logging.debug("Saved {} base bindings to {}".format(len(self._bindings), self.path))
