"""Bot status labels and the transitions allowed between them.

A PR carries at most one bot label. Setting a label removes every other bot
label before adding the target, so no write of ours ever leaves two behind.
"""

from __future__ import annotations

import logging
from typing import Final, Protocol

from reviewloop.models import BotLabel, PullRequestTask
from reviewloop.observability import log_event


LOGGER = logging.getLogger("reviewloop.labels")

REVIEW_NEEDED: Final[BotLabel] = "bot-review-needed"
CHANGES_NEEDED: Final[BotLabel] = "bot-changes-needed"
CI_PENDING: Final[BotLabel] = "bot-ci-pending"
HUMAN_REVIEW_NEEDED: Final[BotLabel] = "human-review-needed"
HUMAN_INTERVENTION: Final[BotLabel] = "bot-human-intervention"

BOT_LABELS: Final[tuple[BotLabel, ...]] = (
    REVIEW_NEEDED,
    CHANGES_NEEDED,
    CI_PENDING,
    HUMAN_REVIEW_NEEDED,
    HUMAN_INTERVENTION,
)

ALLOWED_TRANSITIONS: Final[dict[BotLabel, frozenset[BotLabel]]] = {
    REVIEW_NEEDED: frozenset({CHANGES_NEEDED, HUMAN_REVIEW_NEEDED, CI_PENDING}),
    CHANGES_NEEDED: frozenset({CI_PENDING, CHANGES_NEEDED, HUMAN_INTERVENTION}),
    CI_PENDING: frozenset({REVIEW_NEEDED, CHANGES_NEEDED}),
    HUMAN_REVIEW_NEEDED: frozenset(),
    HUMAN_INTERVENTION: frozenset(),
}


class InvalidTransitionError(RuntimeError):
    pass


class LabelClient(Protocol):
    def add_label(self, issue_number: int, label: str) -> None: ...

    def remove_label(self, issue_number: int, label: str) -> bool: ...


def is_allowed_transition(source: BotLabel, target: BotLabel) -> bool:
    return target in ALLOWED_TRANSITIONS[source]


def set_label(github: LabelClient, pr_number: int, target: BotLabel) -> None:
    for label in BOT_LABELS:
        if label == target:
            continue
        # Removing an absent label is a no-op for us.
        github.remove_label(pr_number, label)
    github.add_label(pr_number, target)


def transition(
    github: LabelClient,
    task: PullRequestTask,
    *,
    source: BotLabel,
    target: BotLabel,
) -> None:
    if not is_allowed_transition(source, target):
        raise InvalidTransitionError(f"{source} -> {target} is not a valid label transition")
    set_label(github, task.number, target)
    log_event(
        LOGGER,
        "label_transitioned",
        pr=task.display_name,
        source=source,
        target=target,
    )
