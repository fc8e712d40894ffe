"""Tests for pull_request_review event processing."""

from prbridge.github import pull_requests
from prbridge.github.reviews import handle_review
from prbridge.store import store


async def posted_message(seed, pr_payload, log):
    await seed.repo("o/r", "T1", default_channel="C0000001")
    await pull_requests.handle_opened(pr_payload(), log)
    return (await store.get_tracked_messages_for_pr("o/r", 42))[0]


def reactions(slack, message):
    return slack.reactions_on("T1", "C0000001", message.message_ts)


class TestReviewSubmitted:
    async def test_approved(self, slack, seed, pr_payload, review_payload, log):
        message = await posted_message(seed, pr_payload, log)

        await handle_review("submitted", review_payload(state="approved"), log)

        assert reactions(slack, message) == {"white_check_mark"}

    async def test_state_is_case_insensitive(self, slack, seed, pr_payload, review_payload, log):
        message = await posted_message(seed, pr_payload, log)

        await handle_review("submitted", review_payload(state="CHANGES_REQUESTED"), log)

        assert reactions(slack, message) == {"arrows_counterclockwise"}

    async def test_later_review_replaces_earlier(self, slack, seed, pr_payload, review_payload, log):
        message = await posted_message(seed, pr_payload, log)

        await handle_review("submitted", review_payload(state="changes_requested"), log)
        await handle_review("submitted", review_payload(state="approved"), log)

        assert reactions(slack, message) == {"white_check_mark"}

    async def test_unknown_state_is_ignored(self, slack, seed, pr_payload, review_payload, log):
        await posted_message(seed, pr_payload, log)
        calls_before = len(slack.calls)

        await handle_review("submitted", review_payload(state="pending"), log)

        assert len(slack.calls) == calls_before

    async def test_review_on_closed_pr_keeps_terminal(self, slack, seed, pr_payload, review_payload, log):
        message = await posted_message(seed, pr_payload, log)
        slack.reactions[("T1", "C0000001", message.message_ts)].add("purple_heart")

        await handle_review(
            "submitted",
            review_payload(state="commented", pr_state="closed", merged=True),
            log,
        )

        assert reactions(slack, message) == {"speech_balloon", "purple_heart"}


class TestReviewDismissed:
    async def test_dismissed_clears_outcome(self, slack, seed, pr_payload, review_payload, log):
        message = await posted_message(seed, pr_payload, log)
        await handle_review("submitted", review_payload(state="approved"), log)

        await handle_review("dismissed", review_payload(action="dismissed", state="dismissed"), log)

        assert reactions(slack, message) == set()


async def test_no_tracked_messages_is_noop(slack, seed, review_payload, log):
    await seed.repo("o/r", "T1", default_channel="C0000001")

    await handle_review("submitted", review_payload(state="approved"), log)

    assert slack.calls == []
