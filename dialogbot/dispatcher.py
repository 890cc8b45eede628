"""
Central dispatcher for the dialog bot.

Handles:
- Filtering and routing direct messages from the real-time stream
- Running the interaction engine under a per-conversation lock
- Applying session writes, sending replies and running end modules
- Keeping store failures and dangling interactions scoped to one conversation
"""

import logging
from typing import Callable, Optional

from slack_sdk.errors import SlackApiError

from .engine import (
    InteractionEngine, MessageEvent, Reply, SelectionEvent, SessionState, Transition
)
from .errors import DanglingInteractionError, SessionStoreError
from .plugin_loader import ModuleRegistry
from .storage import SessionStore, session_key

logger = logging.getLogger(__name__)

STORE_ERROR_RESPONSE = "Sorry, something went wrong. Please try again."
ABORTED_RESPONSE = "Sorry, this conversation hit a problem and has been reset."
CHANNEL_JOIN_RESPONSE = "I don't really like being in channels, so feel free to kick me out"


def respond_to_dm(event: dict) -> bool:
    """Return True if the bot should answer this message event."""
    # We don't talk to bots - it could be ourselves
    if event.get("bot_id") or not event.get("user"):
        return False

    if event.get("user") == "USLACKBOT":
        return False

    # Edits, deletions, joins and the like
    if event.get("subtype"):
        return False

    if not event.get("text"):
        return False

    channel_type = event.get("channel_type")
    if channel_type is not None:
        return channel_type == "im"
    return event.get("channel", "").startswith("D")


class Dispatcher:
    """Runs inbound events through the engine and carries out the results."""

    def __init__(
        self,
        engine: InteractionEngine,
        store: SessionStore,
        registry: Optional[ModuleRegistry] = None
    ):
        self.engine = engine
        self.store = store
        self.registry = registry if registry is not None else ModuleRegistry()

    # ------------------------------------------------------------------
    # Real-time message stream
    # ------------------------------------------------------------------

    def handle_dm(
        self,
        event: dict,
        say: Callable[..., None],
        client,
        team_id: str = ""
    ) -> None:
        """
        Handle an incoming message event from the stream.

        Args:
            event: Slack message event
            say: Slack say function for responses
            client: Slack WebClient, used to look up the sender's name
            team_id: Workspace id, used when the event itself lacks one
        """
        if not respond_to_dm(event):
            logger.debug("Ignoring message event")
            return

        user_id = event["user"]
        try:
            user = client.users_info(user=user_id)["user"]
        except SlackApiError as e:
            logger.error(f"users_info error for {user_id}: {e}")
            return

        username = user.get("real_name") or user.get("name") or user_id

        message = MessageEvent(
            team_id=event.get("team") or team_id,
            channel_id=event["channel"],
            user_id=user_id,
            username=username,
            text=event["text"],
        )

        transition = self.process_message(message)
        self._send_replies(transition.replies, say)
        self.finish(transition)

    def handle_member_joined(
        self,
        event: dict,
        say: Callable[..., None],
        bot_user_id: Optional[str] = None
    ) -> None:
        """Tell channels the bot was added to that it only works in DMs."""
        if bot_user_id and event.get("user") != bot_user_id:
            return
        logger.info(f"Added to channel {event.get('channel')}; bot only handles DMs")
        try:
            say(CHANNEL_JOIN_RESPONSE)
        except SlackApiError as e:
            logger.warning(f"Failed to post channel notice: {e}")

    # ------------------------------------------------------------------
    # Event processing shared by both routers
    # ------------------------------------------------------------------

    def process_message(self, event: MessageEvent) -> Transition:
        key = session_key(event.team_id, event.channel_id)
        return self._process(key, lambda session: self.engine.handle_message(session, event))

    def process_selection(self, event: SelectionEvent) -> Transition:
        key = session_key(event.team_id, event.channel_id)
        return self._process(key, lambda session: self.engine.handle_selection(session, event))

    def finish(self, transition: Transition) -> list[str]:
        """Run end modules for a completed interaction, after replies are sent."""
        completion = transition.completion
        if completion is None or not completion.module_names:
            return []
        return self.registry.run_end_modules(
            completion.module_names, completion.results, completion.questions
        )

    def _process(
        self,
        key: str,
        decide: Callable[[dict[str, str]], Transition]
    ) -> Transition:
        """Read, decide and write for one key, holding its lock throughout."""
        try:
            with self.store.lock(key):
                session = self.store.get(key)
                try:
                    transition = decide(session)
                except DanglingInteractionError as e:
                    logger.error(f"Aborting conversation {key}: {e}")
                    transition = Transition(
                        state=SessionState.NO_SESSION,
                        replies=[Reply(text=ABORTED_RESPONSE)],
                        delete=True,
                    )
                self._apply(key, transition)
                return transition

        except SessionStoreError:
            logger.exception(f"Session store failure for {key}")
            return Transition(
                state=SessionState.NO_SESSION,
                replies=[Reply(text=STORE_ERROR_RESPONSE)],
                stale=True,
            )

    def _apply(self, key: str, transition: Transition) -> None:
        """Write the transition's session changes to the store."""
        if transition.delete:
            self.store.delete(key)
            return

        if transition.create:
            self.store.create(key, transition.create, transition.ttl)

        for name, value in transition.record.items():
            if not self.store.append_field(key, name, value):
                logger.warning(f"Session {key} expired before {name} could be saved")
                return

        if transition.update and not self.store.set_fields(key, transition.update):
            logger.warning(f"Session {key} expired before it could move on")

    def _send_replies(self, replies: list[Reply], say: Callable[..., None]) -> None:
        """Send replies to Slack in order."""
        for reply in replies:
            try:
                if reply.attachment:
                    say(
                        text=reply.attachment.get("fallback", ""),
                        attachments=[reply.attachment]
                    )
                else:
                    say(reply.text)
            except SlackApiError as e:
                logger.error(f"Failed to send reply: {e}")
