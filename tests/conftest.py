"""
Shared fixtures.

- Redis is a fakeredis server per test, swapped into the client singleton.
- Slack is an in-memory workspace behind prbridge.slack.api._call, so the
  client's idempotency and error mapping run for real.
- GitHub is an in-memory set of PRs and reviews behind github_get.
"""

import asyncio
import hashlib
import hmac
import itertools
import json
import re
import uuid
from collections import defaultdict

import fakeredis
import pytest

from prbridge.errors import NotFoundError
from prbridge.github import api as github_api
from prbridge.logger import bind, get_logger
from prbridge.models import JobType, LinkedUser, RepoRegistration, WebhookJob, Workspace, wrap
from prbridge.slack import api as slack_api
from prbridge.slack.api import SlackMethodError
from prbridge.store import redis_client, store


GITHUB_SECRET = "test-github-secret"
SLACK_SECRET = "test-slack-secret"


def github_signature(body: bytes, secret: str = GITHUB_SECRET) -> str:
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


@pytest.fixture(autouse=True)
def secrets(monkeypatch):
    monkeypatch.setenv("GITHUB_WEBHOOK_SECRET", GITHUB_SECRET)
    monkeypatch.setenv("SLACK_SIGNING_SECRET", SLACK_SECRET)


@pytest.fixture
def redis_server():
    return fakeredis.FakeServer()


@pytest.fixture(autouse=True)
def redis(redis_server):
    """Fresh fake Redis for every test, installed as the shared client."""
    client = fakeredis.FakeAsyncRedis(server=redis_server, decode_responses=True)
    redis_client.set_redis(client)
    yield client
    redis_client.set_redis(None)


@pytest.fixture
def redis_sync(redis_server):
    """Synchronous view of the same fake server, for FastAPI route tests."""
    return fakeredis.FakeRedis(server=redis_server, decode_responses=True)


@pytest.fixture
def log():
    return bind(get_logger("prbridge.tests"), trace_id="test-trace")


# =========================================================
# Slack
# =========================================================

class FakeSlack:
    """In-memory Slack Web API speaking the subset the bridge uses."""

    def __init__(self):
        self.messages = {}
        self.reactions = defaultdict(set)
        self.channels = defaultdict(dict)
        self.calls = []
        self.failures = {}
        self.delay = 0
        self._ts = itertools.count(1)

    def add_channel(self, team_id, name, channel_id):
        self.channels[team_id][name] = channel_id

    def fail(self, method, code, team_id=None, retry_after=None):
        self.failures[(team_id, method)] = (code, retry_after)

    def reactions_on(self, team_id, channel_id, ts):
        return set(self.reactions[(team_id, channel_id, ts)])

    def posted(self, team_id=None):
        return [
            (key, text) for key, text in self.messages.items()
            if team_id is None or key[0] == team_id
        ]

    def method_calls(self, method):
        return [c for c in self.calls if c[1] == method]

    async def call(self, team_id, method, payload):
        self.calls.append((team_id, method, payload))
        if self.delay:
            await asyncio.sleep(self.delay)

        failure = self.failures.get((team_id, method)) or self.failures.get((None, method))
        if failure:
            code, retry_after = failure
            raise SlackMethodError(code, method, retry_after=retry_after)

        if method == "chat.postMessage":
            ts = f"1700000000.{next(self._ts):06d}"
            self.messages[(team_id, payload["channel"], ts)] = payload["text"]
            return {"ok": True, "channel": payload["channel"], "ts": ts}

        if method == "reactions.add":
            key = (team_id, payload["channel"], payload["timestamp"])
            if payload["name"] in self.reactions[key]:
                raise SlackMethodError("already_reacted", method)
            self.reactions[key].add(payload["name"])
            return {"ok": True}

        if method == "reactions.remove":
            key = (team_id, payload["channel"], payload["timestamp"])
            if payload["name"] not in self.reactions[key]:
                raise SlackMethodError("no_reaction", method)
            self.reactions[key].discard(payload["name"])
            return {"ok": True}

        if method == "chat.delete":
            key = (team_id, payload["channel"], payload["ts"])
            if key not in self.messages:
                raise SlackMethodError("message_not_found", method)
            del self.messages[key]
            return {"ok": True}

        if method == "conversations.list":
            return {
                "ok": True,
                "channels": [
                    {"id": cid, "name": name}
                    for name, cid in self.channels[team_id].items()
                ],
                "response_metadata": {"next_cursor": ""},
            }

        raise AssertionError(f"unexpected Slack method {method}")


@pytest.fixture
def slack(monkeypatch):
    fake = FakeSlack()
    monkeypatch.setattr(slack_api, "_call", fake.call)
    return fake


# =========================================================
# GitHub
# =========================================================

class FakeGitHub:
    """PRs and reviews served through github_get."""

    PULL_RE = re.compile(r"^/repos/(?P<repo>[^/]+/[^/]+)/pulls/(?P<number>\d+)(?P<reviews>/reviews)?$")

    def __init__(self):
        self.pulls = {}
        self.reviews = defaultdict(list)
        self.errors = {}
        self.requests = []

    def set_pr(self, repo, number, state="open", merged=False):
        self.pulls[(repo, number)] = {"number": number, "state": state, "merged": merged}

    def add_review(self, repo, number, login, state):
        self.reviews[(repo, number)].append({
            "user": {"login": login},
            "state": state.upper(),
        })

    async def get(self, repo_full_name, endpoint):
        self.requests.append(endpoint)
        path = endpoint.split("?", 1)[0]

        if path in self.errors:
            raise self.errors[path]

        m = self.PULL_RE.match(path)
        if not m:
            raise NotFoundError(endpoint)

        key = (m.group("repo"), int(m.group("number")))
        if key not in self.pulls:
            raise NotFoundError(endpoint)

        if m.group("reviews"):
            return list(self.reviews[key])
        return dict(self.pulls[key])


@pytest.fixture
def github(monkeypatch):
    fake = FakeGitHub()
    monkeypatch.setattr(github_api, "github_get", fake.get)
    return fake


# =========================================================
# Data helpers
# =========================================================

@pytest.fixture
def seed():
    """Coroutine helpers writing records straight into the store."""

    class Seed:
        async def workspace(self, team_id):
            await store.save_workspace(Workspace(team_id=team_id, access_token=f"xoxb-{team_id}"))

        async def repo(self, repo_full_name, workspace_id, default_channel=None, enabled=True):
            await store.register_repo_if_absent(RepoRegistration(
                repo_full_name=repo_full_name,
                workspace_id=workspace_id,
                default_channel=default_channel,
                enabled=enabled,
            ))

        async def user(self, **fields):
            fields.setdefault("verified", True)
            user = LinkedUser(**fields)
            await store.save_user(user)
            return user

    return Seed()


@pytest.fixture
def pr_payload():
    def build(
        action="opened",
        number=42,
        repo="o/r",
        title="Add feature",
        body="",
        author_login="alice",
        author_id=1001,
        draft=False,
        state="open",
        merged=False,
        additions=10,
        deletions=5,
    ):
        return {
            "action": action,
            "repository": {"full_name": repo},
            "pull_request": {
                "number": number,
                "title": title,
                "body": body,
                "html_url": f"https://github.com/{repo}/pull/{number}",
                "user": {"login": author_login, "id": author_id},
                "draft": draft,
                "state": state,
                "merged": merged,
                "additions": additions,
                "deletions": deletions,
            },
        }

    return build


@pytest.fixture
def review_payload(pr_payload):
    def build(action="submitted", state="approved", number=42, repo="o/r", pr_state="open", merged=False):
        payload = pr_payload(action=action, number=number, repo=repo, state=pr_state, merged=merged)
        payload["review"] = {"state": state, "user": {"login": "bob"}}
        return payload

    return build


@pytest.fixture
def webhook_job():
    def build(event_type, payload):
        return wrap(JobType.GITHUB_WEBHOOK, WebhookJob(
            id=uuid.uuid4().hex,
            event_type=event_type,
            delivery_id=uuid.uuid4().hex,
            trace_id="test-trace",
            payload=json.dumps(payload),
        ))

    return build
