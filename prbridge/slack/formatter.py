from typing import Optional

# (max lines changed, emoji); the last entry catches everything larger
PR_SIZE_THRESHOLDS = [
    (2, "ant"),
    (10, "mouse2"),
    (25, "rabbit2"),
    (50, "raccoon"),
    (100, "dog2"),
    (250, "llama"),
    (500, "pig2"),
    (1000, "gorilla"),
    (1500, "elephant"),
    (2000, "t-rex"),
    (9999, "whale2"),
]


def pr_size_emoji(lines_changed: int) -> str:
    for max_lines, emoji in PR_SIZE_THRESHOLDS:
        if lines_changed <= max_lines:
            return emoji
    return PR_SIZE_THRESHOLDS[-1][1]


def format_pr_message(
    title: str,
    url: str,
    author_login: str,
    lines_changed: int,
    author_slack_user_id: Optional[str] = None,
    user_to_cc: Optional[str] = None,
    custom_emoji: Optional[str] = None,
) -> str:
    emoji = (custom_emoji or pr_size_emoji(lines_changed)).strip(":")
    author = f"<@{author_slack_user_id}>" if author_slack_user_id else author_login

    text = f":{emoji}: <{url}|{title}> by {author}"
    if user_to_cc:
        text += f" (cc: @{user_to_cc})"
    return text
