"""
Reaction sync engine.

Brings the emoji reactions on tracked Slack messages in line with a desired
PR state. Reactions are never read back from Slack or stored: every sync
removes what must not be there and adds what must, relying on the
idempotent add/remove semantics of the Slack client.
"""

from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional

from prbridge import settings
from prbridge.errors import ReactionLockUnavailable
from prbridge.logger import bind, get_logger
from prbridge.models import TrackedMessage
from prbridge.slack import api as slack_api
from prbridge.store import store


logger = get_logger("prbridge.reactions")


class PRState(str, Enum):
    NONE = "none"
    APPROVED = "approved"
    CHANGES_REQUESTED = "changes_requested"
    COMMENTED = "commented"
    CLOSED = "closed"
    MERGED = "merged"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


REVIEW_STATES = (PRState.APPROVED, PRState.CHANGES_REQUESTED, PRState.COMMENTED)
TERMINAL_STATES = (PRState.CLOSED, PRState.MERGED)


def emoji_for(state: PRState) -> Optional[str]:
    return {
        PRState.APPROVED: settings.EMOJI_APPROVED,
        PRState.CHANGES_REQUESTED: settings.EMOJI_CHANGES_REQUESTED,
        PRState.COMMENTED: settings.EMOJI_COMMENTED,
        PRState.CLOSED: settings.EMOJI_CLOSED,
        PRState.MERGED: settings.EMOJI_MERGED,
    }.get(state)


@dataclass
class SyncReport:
    applied: int = 0
    failed: int = 0
    skipped: int = 0
    deferred: int = 0

    def add(self, other: "SyncReport") -> "SyncReport":
        self.applied += other.applied
        self.failed += other.failed
        self.skipped += other.skipped
        self.deferred += other.deferred
        return self


class _LockedReactions:
    """
    Reaction writes on one message, each renewing the message's lock first
    so the lease never lapses between Slack calls.
    """

    def __init__(self, message: TrackedMessage, lock):
        self.message = message
        self.lock = lock

    async def add(self, emoji: str):
        await store.refresh_reaction_lock(self.lock)
        await slack_api.add_reaction(
            self.message.workspace_id, self.message.channel_id, self.message.message_ts, emoji
        )

    async def remove(self, emoji: str):
        await store.refresh_reaction_lock(self.lock)
        await slack_api.remove_reaction(
            self.message.workspace_id, self.message.channel_id, self.message.message_ts, emoji
        )


async def _apply_review_state(reactions: _LockedReactions, desired: PRState):
    for state in REVIEW_STATES:
        if state is not desired:
            await reactions.remove(emoji_for(state))

    if desired in REVIEW_STATES:
        await reactions.add(emoji_for(desired))


async def _sync_message(
    message: TrackedMessage,
    state: PRState,
    review_state: Optional[PRState],
):
    async with store.reaction_lock(message.id) as lock:
        reactions = _LockedReactions(message, lock)

        if state.is_terminal:
            if review_state is not None:
                await _apply_review_state(reactions, review_state)
            await reactions.add(emoji_for(state))
            return

        for terminal in TERMINAL_STATES:
            await reactions.remove(emoji_for(terminal))
        await _apply_review_state(reactions, state)


async def sync_workspace(
    workspace_id: str,
    messages: Iterable[TrackedMessage],
    state: PRState,
    review_state: Optional[PRState] = None,
    log=None,
) -> SyncReport:
    """
    Sync every message of one workspace to the desired state.

    For a terminal state, review_state is the review outcome to keep next to
    the terminal reaction; None leaves review reactions untouched. Each
    message is isolated: Slack failures are logged and counted as failed.
    A message whose lock could not be held is counted as deferred, since
    another sync is writing it and this one must run again afterwards.
    """
    log = bind(log or logger, workspace_id=workspace_id, state=state.value)
    report = SyncReport()

    for message in messages:
        msg_log = log.bind(
            tracked_message_id=message.id,
            channel=message.channel_id,
            ts=message.message_ts,
        )

        if message.deleted_by_user:
            msg_log.info("Skipping tracked message deleted by user")
            report.skipped += 1
            continue

        try:
            await _sync_message(message, state, review_state)
        except ReactionLockUnavailable as exc:
            msg_log.warning("Reaction sync deferred: %s", exc)
            report.deferred += 1
            continue
        except Exception:
            msg_log.exception("Reaction sync failed for message")
            report.failed += 1
            continue

        report.applied += 1

    log.info(
        "Workspace reaction sync done: applied=%s failed=%s skipped=%s deferred=%s",
        report.applied,
        report.failed,
        report.skipped,
        report.deferred,
    )
    return report


def group_by_workspace(messages: Iterable[TrackedMessage]) -> Dict[str, List[TrackedMessage]]:
    groups: Dict[str, List[TrackedMessage]] = defaultdict(list)
    for message in messages:
        groups[message.workspace_id].append(message)
    return dict(groups)


async def sync_across_workspaces(
    messages: Iterable[TrackedMessage],
    state: PRState,
    review_state: Optional[PRState] = None,
    log=None,
) -> SyncReport:
    """
    Sync messages in every workspace they belong to.

    Raises ReactionLockUnavailable after all workspaces ran if any message
    was deferred, so the calling job is retried.
    """
    log = log or logger
    report = SyncReport()

    for workspace_id, group in group_by_workspace(messages).items():
        try:
            report.add(await sync_workspace(workspace_id, group, state, review_state, log))
        except Exception:
            bind(log, workspace_id=workspace_id).exception("Workspace reaction sync failed")
            report.failed += len(group)

    if report.deferred:
        raise ReactionLockUnavailable(
            f"{report.deferred} tracked message(s) locked by another sync"
        )

    return report


async def collect_tracked_messages(repo_full_name: str, pr_number: int) -> List[TrackedMessage]:
    """
    All live tracked messages for a PR in every workspace that registered
    the repository.
    """
    messages: List[TrackedMessage] = []
    for registration in await store.get_repo_registrations(repo_full_name):
        messages.extend(
            await store.get_tracked_messages_for_pr(
                repo_full_name,
                pr_number,
                workspace_id=registration.workspace_id,
            )
        )
    return messages
