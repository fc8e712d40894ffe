import re
from dataclasses import dataclass
from typing import List, Optional

DIRECTIVE_RE = re.compile(r"!reviews?:\s*(.+)", re.IGNORECASE)
SKIP_DIRECTIVE_RE = re.compile(r"!review-skip", re.IGNORECASE)
CHANNEL_NAME_RE = re.compile(r"^[a-zA-Z0-9_-]+$")
USERNAME_RE = re.compile(r"^[a-zA-Z0-9._-]+$")

PR_LINK_RE = re.compile(r"https://github\.com/([^/\s<>|]+)/([^/\s<>|]+)/pull/(\d+)")


@dataclass
class PRDirectives:
    skip: bool = False
    channel: Optional[str] = None
    user_to_cc: Optional[str] = None
    custom_emoji: Optional[str] = None


@dataclass(frozen=True)
class PRLink:
    url: str
    owner: str
    repo: str
    pr_number: int

    @property
    def repo_full_name(self) -> str:
        return f"{self.owner}/{self.repo}"


def _apply_part(part: str, directives: PRDirectives):
    if part.lower() == "skip":
        directives.skip = True
        return

    if len(part) > 2 and part.startswith(":") and part.endswith(":"):
        name = part.strip(":")
        if name:
            directives.custom_emoji = name
        return

    if part.startswith("#"):
        name = part[1:]
        if CHANNEL_NAME_RE.match(name):
            directives.channel = name
        return

    if part.startswith("@"):
        name = part[1:]
        if USERNAME_RE.match(name):
            directives.user_to_cc = name


def parse_pr_directives(description: Optional[str]) -> PRDirectives:
    """
    Parse "!review:" directives from a PR description.

    "!review: #channel @user :emoji:" sets the target channel, a user to CC
    and a custom emoji; "!review: skip" or "!review-skip" suppresses the
    notification. When several directives are present the last one wins for
    each component.
    """
    directives = PRDirectives()
    if not description:
        return directives

    normalized = SKIP_DIRECTIVE_RE.sub("!review: skip", description)

    for match in DIRECTIVE_RE.finditer(normalized):
        content = match.group(1).strip()
        for part in re.split(r"[\s,]+", content):
            if part:
                _apply_part(part, directives)

    return directives


def extract_pr_links(text: Optional[str]) -> List[PRLink]:
    """
    Return the distinct GitHub PR links in a chat message, in order of first
    appearance. Repeated links to the same PR count once.
    """
    if not text:
        return []

    seen = set()
    links = []
    for m in PR_LINK_RE.finditer(text):
        link = PRLink(
            url=m.group(0),
            owner=m.group(1),
            repo=m.group(2),
            pr_number=int(m.group(3)),
        )
        identity = (link.repo_full_name.lower(), link.pr_number)
        if identity in seen:
            continue
        seen.add(identity)
        links.append(link)

    return links
