"""
Inbound Slack payloads as a closed set of event types.

Event callbacks parse into MessagePosted, ReactionAdded, SurfaceOpened or
UnsupportedEvent; interaction payloads into BlockAction, ViewSubmission or
UnsupportedInteraction. Handlers match on these exhaustively.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple, Union

from prbridge.errors import ValidationError


@dataclass(frozen=True)
class MessagePosted:
    team_id: str
    channel_id: str
    ts: str
    text: str
    user_id: Optional[str] = None
    subtype: Optional[str] = None
    bot_id: Optional[str] = None
    event_id: Optional[str] = None


@dataclass(frozen=True)
class ReactionAdded:
    team_id: str
    user_id: str
    reaction: str
    channel_id: Optional[str]
    item_ts: Optional[str]
    event_id: Optional[str] = None


@dataclass(frozen=True)
class SurfaceOpened:
    team_id: str
    user_id: str
    tab: Optional[str] = None


@dataclass(frozen=True)
class UnsupportedEvent:
    event_type: str


SlackEvent = Union[MessagePosted, ReactionAdded, SurfaceOpened, UnsupportedEvent]


@dataclass(frozen=True)
class BlockAction:
    team_id: Optional[str]
    user_id: Optional[str]
    action_ids: Tuple[str, ...]


@dataclass(frozen=True)
class ViewSubmission:
    team_id: Optional[str]
    user_id: Optional[str]
    callback_id: Optional[str]


@dataclass(frozen=True)
class UnsupportedInteraction:
    interaction_type: str


SlackInteraction = Union[BlockAction, ViewSubmission, UnsupportedInteraction]


def parse_event(envelope: Dict[str, Any]) -> SlackEvent:
    """
    Parse an event_callback envelope.
    """
    event = envelope.get("event")
    if not isinstance(event, dict):
        raise ValidationError("event_callback without event")

    team_id = envelope.get("team_id") or event.get("team")
    event_type = event.get("type") or ""
    event_id = envelope.get("event_id")

    if not team_id:
        raise ValidationError("event_callback without team_id")

    if event_type == "message":
        if not event.get("channel") or not event.get("ts"):
            return UnsupportedEvent(event_type="message")
        return MessagePosted(
            team_id=team_id,
            channel_id=event["channel"],
            ts=event["ts"],
            text=event.get("text") or "",
            user_id=event.get("user"),
            subtype=event.get("subtype"),
            bot_id=event.get("bot_id"),
            event_id=event_id,
        )

    if event_type == "reaction_added":
        item = event.get("item") or {}
        return ReactionAdded(
            team_id=team_id,
            user_id=event.get("user") or "",
            reaction=event.get("reaction") or "",
            channel_id=item.get("channel") if item.get("type") == "message" else None,
            item_ts=item.get("ts") if item.get("type") == "message" else None,
            event_id=event_id,
        )

    if event_type == "app_home_opened":
        return SurfaceOpened(
            team_id=team_id,
            user_id=event.get("user") or "",
            tab=event.get("tab"),
        )

    return UnsupportedEvent(event_type=event_type)


def parse_interaction(payload: Dict[str, Any]) -> SlackInteraction:
    interaction_type = payload.get("type") or ""
    team_id = (payload.get("team") or {}).get("id")
    user_id = (payload.get("user") or {}).get("id")

    if interaction_type == "block_actions":
        return BlockAction(
            team_id=team_id,
            user_id=user_id,
            action_ids=tuple(
                a.get("action_id", "") for a in payload.get("actions") or []
            ),
        )

    if interaction_type == "view_submission":
        return ViewSubmission(
            team_id=team_id,
            user_id=user_id,
            callback_id=(payload.get("view") or {}).get("callback_id"),
        )

    return UnsupportedInteraction(interaction_type=interaction_type)
