import os
from dotenv import load_dotenv

load_dotenv()

# === Raw environment values ===

GITHUB_WEBHOOK_SECRET = os.getenv("GITHUB_WEBHOOK_SECRET")
SLACK_SIGNING_SECRET = os.getenv("SLACK_SIGNING_SECRET")

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

# GitHub App authentication
GITHUB_APP_ID = os.getenv("GITHUB_APP_ID")
GITHUB_PRIVATE_KEY_PATH = os.getenv("GITHUB_PRIVATE_KEY_PATH")
GITHUB_API_URL = os.getenv("GITHUB_API_URL", "https://api.github.com")

SLACK_API_URL = os.getenv("SLACK_API_URL", "https://slack.com/api")

# Slack rejects replayed requests outside this window
SLACK_TIMESTAMP_MAX_AGE_SECONDS = int(
    os.getenv("SLACK_TIMESTAMP_MAX_AGE_SECONDS", "300")
)

# Job processing
JOB_PROCESSING_TIMEOUT_SECONDS = float(
    os.getenv("JOB_PROCESSING_TIMEOUT_SECONDS", "300")
)
JOB_MAX_ATTEMPTS = int(os.getenv("JOB_MAX_ATTEMPTS", "10"))
JOB_RETRY_WARNING_THRESHOLD = int(os.getenv("JOB_RETRY_WARNING_THRESHOLD", "5"))
JOB_RETRY_BASE_DELAY_SECONDS = float(
    os.getenv("JOB_RETRY_BASE_DELAY_SECONDS", "5")
)
JOB_RETRY_MAX_DELAY_SECONDS = float(
    os.getenv("JOB_RETRY_MAX_DELAY_SECONDS", "600")
)

WORKER_ENABLED = os.getenv("WORKER_ENABLED", "true").lower() == "true"
WORKER_CONCURRENCY = int(os.getenv("WORKER_CONCURRENCY", "4"))
QUEUE_POLL_TIMEOUT_SECONDS = float(os.getenv("QUEUE_POLL_TIMEOUT_SECONDS", "5"))

# A posting attempt holds the duplicate-suppression slot for this long
BOT_MESSAGE_CLAIM_TTL_SECONDS = int(
    os.getenv("BOT_MESSAGE_CLAIM_TTL_SECONDS", "120")
)
# How long a sync waits for the per-message reaction lock
REACTION_LOCK_TIMEOUT_SECONDS = float(
    os.getenv("REACTION_LOCK_TIMEOUT_SECONDS", "30")
)
# Lease on the reaction lock, renewed before every Slack write
REACTION_LOCK_TTL_SECONDS = float(
    os.getenv("REACTION_LOCK_TTL_SECONDS", "60")
)
SLACK_TIMEOUT_SECONDS = float(os.getenv("SLACK_TIMEOUT_SECONDS", "10"))

# Reaction vocabulary (Slack emoji names, no colons)
EMOJI_APPROVED = os.getenv("EMOJI_APPROVED", "white_check_mark")
EMOJI_CHANGES_REQUESTED = os.getenv("EMOJI_CHANGES_REQUESTED", "arrows_counterclockwise")
EMOJI_COMMENTED = os.getenv("EMOJI_COMMENTED", "speech_balloon")
EMOJI_MERGED = os.getenv("EMOJI_MERGED", "purple_heart")
EMOJI_CLOSED = os.getenv("EMOJI_CLOSED", "x")
EMOJI_DELETE = os.getenv("EMOJI_DELETE", "wastebasket")

# User-facing text

CHANNEL_NOT_FOUND_MESSAGE = (
    "Channel `#{channel}` not found or the bot doesn't have access. "
    "Make sure the channel exists and the bot has been invited to it."
)


def validate_github_settings() -> None:
    """
    Validate required GitHub App configuration.

    Raises RuntimeError if required values are missing or invalid.
    """
    if not GITHUB_APP_ID:
        raise RuntimeError("GITHUB_APP_ID is not set")

    if not GITHUB_PRIVATE_KEY_PATH:
        raise RuntimeError("GITHUB_PRIVATE_KEY_PATH is not set")

    if not os.path.exists(GITHUB_PRIVATE_KEY_PATH):
        raise RuntimeError(
            f"GITHUB_PRIVATE_KEY_PATH does not exist: {GITHUB_PRIVATE_KEY_PATH}"
        )


def validate_slack_settings() -> None:
    """
    Validate required Slack configuration.

    Raises RuntimeError if the signing secret is missing.
    """
    if not os.getenv("SLACK_SIGNING_SECRET"):
        raise RuntimeError("SLACK_SIGNING_SECRET is not set")


def validate_worker_settings() -> None:
    if JOB_PROCESSING_TIMEOUT_SECONDS <= 0:
        raise RuntimeError("JOB_PROCESSING_TIMEOUT_SECONDS must be positive")

    if JOB_MAX_ATTEMPTS <= 0:
        raise RuntimeError("JOB_MAX_ATTEMPTS must be positive")

    if WORKER_CONCURRENCY <= 0:
        raise RuntimeError("WORKER_CONCURRENCY must be positive")

    if REACTION_LOCK_TTL_SECONDS <= SLACK_TIMEOUT_SECONDS:
        raise RuntimeError(
            "REACTION_LOCK_TTL_SECONDS must exceed SLACK_TIMEOUT_SECONDS"
        )
