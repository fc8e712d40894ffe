"""Tests for pull_request event processing (opened / closed / reopened)."""

import pytest

from prbridge.errors import TransientDependencyError
from prbridge.github import pull_requests
from prbridge.github.events import process_webhook_job
from prbridge.models import MessageSource
from prbridge.store import store
from prbridge.workers.dispatcher import Outcome, dispatch


async def bot_messages(repo="o/r", number=42):
    return [
        m for m in await store.get_tracked_messages_for_pr(repo, number)
        if m.source is MessageSource.BOT
    ]


class TestHandleOpened:
    async def test_single_workspace_default_channel(self, slack, seed, pr_payload, log):
        """PR #42 in o/r registered only in T1 with default channel."""
        await seed.repo("o/r", "T1", default_channel="C0000001")

        await pull_requests.handle_opened(pr_payload(), log)

        messages = await bot_messages()
        assert len(messages) == 1
        message = messages[0]
        assert message.repo_full_name == "o/r"
        assert message.pr_number == 42
        assert message.channel_id == "C0000001"
        assert message.workspace_id == "T1"
        assert message.author_github_login == "alice"
        assert message.author_github_id == 1001

        posted = slack.posted()
        assert len(posted) == 1
        assert posted[0][0][:2] == ("T1", "C0000001")
        assert "<https://github.com/o/r/pull/42|Add feature> by alice" in posted[0][1]

    async def test_fan_out_one_message_per_workspace_with_channel(self, slack, seed, pr_payload, log):
        await seed.repo("o/r", "T1", default_channel="C0000001")
        await seed.repo("o/r", "T2", default_channel="C0000002")
        await seed.repo("o/r", "T3")

        await pull_requests.handle_opened(pr_payload(), log)

        messages = await bot_messages()
        assert sorted(m.workspace_id for m in messages) == ["T1", "T2"]
        assert len(slack.posted()) == 2
        assert slack.posted("T3") == []

    async def test_duplicate_delivery_posts_once(self, slack, seed, pr_payload, log):
        await seed.repo("o/r", "T1", default_channel="C0000001")

        await pull_requests.handle_opened(pr_payload(), log)
        await pull_requests.handle_opened(pr_payload(), log)

        assert len(await bot_messages()) == 1
        assert len(slack.posted()) == 1

    async def test_draft_is_skipped(self, slack, seed, pr_payload, log):
        await seed.repo("o/r", "T1", default_channel="C0000001")

        await pull_requests.handle_opened(pr_payload(draft=True), log)

        assert slack.posted() == []

    async def test_ready_for_review_posts(self, slack, seed, pr_payload, webhook_job):
        await seed.repo("o/r", "T1", default_channel="C0000001")

        outcome = await dispatch(webhook_job("pull_request", pr_payload(action="ready_for_review")), 0)

        assert outcome is Outcome.PROCESSED
        assert len(slack.posted()) == 1

    async def test_skip_directive(self, slack, seed, pr_payload, log):
        await seed.repo("o/r", "T1", default_channel="C0000001")

        await pull_requests.handle_opened(pr_payload(body="!review-skip"), log)

        assert slack.posted() == []
        assert await bot_messages() == []

    async def test_directives_shape_the_message(self, slack, seed, pr_payload, log):
        await seed.repo("o/r", "T1", default_channel="C0000001")

        await pull_requests.handle_opened(pr_payload(body="!review: @carol :rocket:"), log)

        text = slack.posted()[0][1]
        assert text.startswith(":rocket: ")
        assert text.endswith("(cc: @carol)")
        assert (await bot_messages())[0].user_to_cc == "carol"

    async def test_unregistered_repo_without_author_is_skipped(self, slack, pr_payload, log):
        await pull_requests.handle_opened(pr_payload(), log)

        assert slack.posted() == []
        assert await store.get_repo_registrations("o/r") == []


class TestChannelPriority:
    async def test_annotation_beats_all_defaults(self, slack, seed, pr_payload, log):
        slack.add_channel("T1", "reviews", "C00REVIEW")
        await seed.repo("o/r", "T1", default_channel="C0000001")
        await seed.user(
            slack_user_id="U1", workspace_id="T1", github_login="alice",
            github_user_id=1001, default_channel="C0000005",
        )

        await pull_requests.handle_opened(pr_payload(body="!review: #reviews"), log)

        assert [m.channel_id for m in await bot_messages()] == ["C00REVIEW"]

    async def test_author_default_only_in_own_workspace(self, slack, seed, pr_payload, log):
        await seed.repo("o/r", "T1", default_channel="C0000001")
        await seed.repo("o/r", "T2", default_channel="C0000002")
        await seed.user(
            slack_user_id="U1", workspace_id="T1", github_login="alice",
            github_user_id=1001, default_channel="C0000005",
        )

        await pull_requests.handle_opened(pr_payload(), log)

        channels = {m.workspace_id: m.channel_id for m in await bot_messages()}
        assert channels == {"T1": "C0000005", "T2": "C0000002"}

    async def test_unverified_author_default_is_ignored(self, slack, seed, pr_payload, log):
        await seed.repo("o/r", "T1", default_channel="C0000001")
        await seed.user(
            slack_user_id="U1", workspace_id="T1", github_login="alice",
            github_user_id=1001, default_channel="C0000005", verified=False,
        )

        await pull_requests.handle_opened(pr_payload(), log)

        assert [m.channel_id for m in await bot_messages()] == ["C0000001"]

    async def test_author_is_tagged_in_own_workspace_only(self, slack, seed, pr_payload, log):
        await seed.repo("o/r", "T1", default_channel="C0000001")
        await seed.repo("o/r", "T2", default_channel="C0000002")
        await seed.user(slack_user_id="U1", workspace_id="T1", github_login="alice", github_user_id=1001)

        await pull_requests.handle_opened(pr_payload(), log)

        assert slack.posted("T1")[0][1].endswith("by <@U1>")
        assert slack.posted("T2")[0][1].endswith("by alice")

    async def test_unknown_annotated_channel_is_not_an_error(self, slack, seed, pr_payload, log):
        await seed.repo("o/r", "T1", default_channel="C0000001")

        await pull_requests.handle_opened(pr_payload(body="!review: #missing"), log)

        assert slack.posted() == []


class TestAutoRegistration:
    async def test_verified_author_registers_own_workspace(self, slack, seed, pr_payload, log):
        await seed.user(
            slack_user_id="U1", workspace_id="T1", github_login="alice",
            github_user_id=1001, default_channel="C0000005",
        )

        await pull_requests.handle_opened(pr_payload(), log)

        assert [r.workspace_id for r in await store.get_repo_registrations("o/r")] == ["T1"]
        assert [m.channel_id for m in await bot_messages()] == ["C0000005"]

    async def test_notifications_disabled_skips(self, slack, seed, pr_payload, log):
        await seed.repo("o/r", "T1", default_channel="C0000001")
        await seed.user(
            slack_user_id="U1", workspace_id="T1", github_login="alice",
            github_user_id=1001, notifications_enabled=False,
        )

        await pull_requests.handle_opened(pr_payload(), log)

        assert slack.posted() == []


class TestPostingFailures:
    async def test_transient_failure_retries_without_duplicates(self, slack, seed, pr_payload, log):
        await seed.repo("o/r", "T1", default_channel="C0000001")
        await seed.repo("o/r", "T2", default_channel="C0000002")
        slack.fail("chat.postMessage", "ratelimited", team_id="T2")

        with pytest.raises(TransientDependencyError):
            await pull_requests.handle_opened(pr_payload(), log)

        assert [m.workspace_id for m in await bot_messages()] == ["T1"]

        # Redelivery after the rate limit clears
        slack.failures.clear()
        await pull_requests.handle_opened(pr_payload(), log)

        assert sorted(m.workspace_id for m in await bot_messages()) == ["T1", "T2"]
        assert len(slack.posted("T1")) == 1

    async def test_rate_limit_hint_is_kept_for_the_retry(self, slack, seed, pr_payload, log):
        await seed.repo("o/r", "T1", default_channel="C0000001")
        await seed.repo("o/r", "T2", default_channel="C0000002")
        slack.fail("chat.postMessage", "ratelimited", team_id="T1", retry_after=30)
        slack.fail("chat.postMessage", "ratelimited", team_id="T2", retry_after=90)

        with pytest.raises(TransientDependencyError) as exc_info:
            await pull_requests.handle_opened(pr_payload(), log)

        assert exc_info.value.retry_after == 90

    async def test_permanent_failure_is_logged_only(self, slack, seed, pr_payload, log):
        await seed.repo("o/r", "T1", default_channel="C0000001")
        slack.fail("chat.postMessage", "not_in_channel")

        await pull_requests.handle_opened(pr_payload(), log)

        assert await bot_messages() == []


class TestHandleClosed:
    async def test_merged_after_approval(self, slack, seed, github, pr_payload, review_payload, webhook_job):
        """Opened, approved, then merged: both reactions end up on the message."""
        await seed.repo("o/r", "T1", default_channel="C0000001")
        github.set_pr("o/r", 42, state="closed", merged=True)
        github.add_review("o/r", 42, "bob", "approved")

        await dispatch(webhook_job("pull_request", pr_payload()), 0)
        await dispatch(webhook_job("pull_request_review", review_payload(state="approved")), 0)
        await dispatch(webhook_job("pull_request", pr_payload(action="closed", state="closed", merged=True)), 0)

        message = (await bot_messages())[0]
        assert slack.reactions_on("T1", "C0000001", message.message_ts) == {"white_check_mark", "purple_heart"}

    async def test_merged_twice_is_idempotent(self, slack, seed, github, pr_payload, log):
        await seed.repo("o/r", "T1", default_channel="C0000001")
        github.set_pr("o/r", 42, state="closed", merged=True)
        await pull_requests.handle_opened(pr_payload(), log)

        closed = pr_payload(action="closed", state="closed", merged=True)
        await pull_requests.handle_closed(closed, log)
        await pull_requests.handle_closed(closed, log)

        message = (await bot_messages())[0]
        assert slack.reactions_on("T1", "C0000001", message.message_ts) == {"purple_heart"}

    async def test_closed_without_merge(self, slack, seed, github, pr_payload, log):
        await seed.repo("o/r", "T1", default_channel="C0000001")
        github.set_pr("o/r", 42, state="closed")
        await pull_requests.handle_opened(pr_payload(), log)

        await pull_requests.handle_closed(pr_payload(action="closed", state="closed"), log)

        message = (await bot_messages())[0]
        assert slack.reactions_on("T1", "C0000001", message.message_ts) == {"x"}

    async def test_review_lookup_failure_still_applies_terminal(self, slack, seed, github, pr_payload, log):
        await seed.repo("o/r", "T1", default_channel="C0000001")
        github.errors["/repos/o/r/pulls/42/reviews"] = TransientDependencyError("GitHub down")
        await pull_requests.handle_opened(pr_payload(), log)
        message = (await bot_messages())[0]
        slack.reactions[("T1", "C0000001", message.message_ts)].add("speech_balloon")

        await pull_requests.handle_closed(pr_payload(action="closed", state="closed", merged=True), log)

        assert slack.reactions_on("T1", "C0000001", message.message_ts) == {"speech_balloon", "purple_heart"}

    async def test_no_tracked_messages_is_noop(self, slack, seed, github, pr_payload, log):
        await seed.repo("o/r", "T1", default_channel="C0000001")

        await pull_requests.handle_closed(pr_payload(action="closed", state="closed"), log)

        assert slack.calls == []
        assert github.requests == []


class TestReopened:
    async def test_reopen_clears_terminal_reaction(self, slack, seed, github, pr_payload, webhook_job, log):
        await seed.repo("o/r", "T1", default_channel="C0000001")
        github.set_pr("o/r", 42, state="closed")
        github.add_review("o/r", 42, "bob", "commented")
        await pull_requests.handle_opened(pr_payload(), log)
        await pull_requests.handle_closed(pr_payload(action="closed", state="closed"), log)

        github.set_pr("o/r", 42, state="open")
        job = webhook_job("pull_request", pr_payload(action="reopened"))
        await process_webhook_job(job, log)

        message = (await bot_messages())[0]
        assert slack.reactions_on("T1", "C0000001", message.message_ts) == {"speech_balloon"}

    async def test_unhandled_action_is_ignored(self, slack, pr_payload, webhook_job, log):
        await process_webhook_job(webhook_job("pull_request", pr_payload(action="labeled")), log)

        assert slack.calls == []
