#!/usr/bin/env python3

import logging
from typing import Dict, List, Optional

from stacksync.execute import ExecutionResult
from stacksync.plan import Action, AddLabel, SyncPlan, order
from stacksync.session import Session


def main(
    *,
    session: Session,
    label: str,
    rev: Optional[str] = None,
) -> ExecutionResult:
    """
    Label the open pull requests of the stack, up to and including rev
    (default: all of them), so a merge queue picks them up.
    """
    stack = session.read_stack()
    index = session.load_index(stack)
    upto = session.commit_of(stack, rev) if rev is not None else None

    actions: List[Action] = []
    for c in stack:
        if upto is not None and c.position > upto.position:
            break
        if c.identity is None:
            logging.warning("{} has no pull request; skipped".format(c.describe()))
            continue
        pr = index.get(c.identity)
        if pr is None or not pr.is_open:
            continue
        if label in pr.labels:
            logging.info("#{} is already queued".format(pr.number))
            continue
        actions.append(AddLabel(c, pull_request=pr, label=label))

    deps: Dict[int, List[Action]] = {id(a): [] for a in actions}
    queue_plan = SyncPlan(order(actions, deps))
    if queue_plan.empty:
        logging.info("Nothing to queue.")
        return ExecutionResult()
    result = session.executor(stack).execute(queue_plan)
    logging.info("\n{}\n".format(result.render()))
    return result
