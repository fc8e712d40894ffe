from prbridge.logger import bind, get_logger
from prbridge.slack import manual_links
from prbridge.slack.events import (
    BlockAction,
    MessagePosted,
    ReactionAdded,
    SlackEvent,
    SlackInteraction,
    SurfaceOpened,
    UnsupportedEvent,
    UnsupportedInteraction,
    ViewSubmission,
)


logger = get_logger("prbridge.slack.handlers")


async def handle_event(event: SlackEvent, log=None):
    log = log or bind(logger)

    match event:
        case MessagePosted():
            return await manual_links.handle_message_posted(event, log)
        case ReactionAdded():
            return await manual_links.handle_reaction_added(event, log)
        case SurfaceOpened(team_id=team_id, user_id=user_id):
            log.info("Home surface opened: workspace_id=%s user=%s", team_id, user_id)
        case UnsupportedEvent(event_type=event_type):
            log.debug("Ignoring Slack event: %s", event_type)

    return None


async def handle_interaction(interaction: SlackInteraction, log=None):
    log = log or bind(logger)

    match interaction:
        case BlockAction(team_id=team_id, action_ids=action_ids):
            log.info("Block action: workspace_id=%s actions=%s", team_id, ",".join(action_ids))
        case ViewSubmission(team_id=team_id, callback_id=callback_id):
            log.info("View submitted: workspace_id=%s callback_id=%s", team_id, callback_id)
        case UnsupportedInteraction(interaction_type=interaction_type):
            log.debug("Ignoring Slack interaction: %s", interaction_type)
