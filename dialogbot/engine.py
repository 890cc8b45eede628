"""
Interaction state machine.

Given the current session field map and an inbound event, the engine
decides what to say and how the session changes. It never touches the
store, Slack or modules itself: it returns a Transition that the routers
carry out.

Session states (derived from the stored fields):
- NO_SESSION: nothing stored for the conversation key
- AWAITING_INTERACTION: an interaction sequence is in progress
- AWAITING_SUBTERM: a one-round sub-term dialog is in progress
"""

import random
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from .errors import DanglingInteractionError
from .models import END, Interaction, InteractionType, Rule, RuleCatalog
from .templates import render

logger = logging.getLogger(__name__)

# Slack keeps interactive messages alive for 30 minutes
INTERACTION_TTL = 29 * 60
SUBTERM_TTL = 5 * 60

DEFAULT_CANCELLED_RESPONSE = "Interaction cancelled"
DEFAULT_COMPLETE_RESPONSE = "Thanks! We'll get back to you soon"
SUBTERM_FALLBACK_RESPONSE = "Sorry, I couldn't help with that."
EXPIRED_RESPONSE = "Looks like this Interaction timed out or no longer exists"
ALREADY_ANSWERED_RESPONSE = "This question has already been answered"

RESPONSE_PREFIX = "response:"


class SessionState(Enum):
    NO_SESSION = "no_session"
    AWAITING_INTERACTION = "awaiting_interaction"
    AWAITING_SUBTERM = "awaiting_subterm"


@dataclass
class MessageEvent:
    """A direct message from the real-time stream."""
    team_id: str
    channel_id: str
    user_id: str
    username: str
    text: str


@dataclass
class SelectionEvent:
    """A button click or menu choice delivered by the webhook."""
    team_id: str
    channel_id: str
    callback_id: str
    value: str
    user_id: str = ""
    username: str = ""


@dataclass
class Reply:
    """One outbound message: plain text or a single attachment."""
    text: str = ""
    attachment: Optional[dict] = None


@dataclass
class Completion:
    """A finished interaction sequence, ready for its end modules."""
    rule: Rule
    results: dict[str, str]

    @property
    def module_names(self) -> list[str]:
        return self.rule.interaction_end_mods

    @property
    def questions(self) -> dict[str, str]:
        return self.rule.questions()

    def responses(self) -> dict[str, str]:
        """Answers keyed by interaction id."""
        return {
            k[len(RESPONSE_PREFIX):]: v
            for k, v in self.results.items()
            if k.startswith(RESPONSE_PREFIX)
        }


@dataclass
class Transition:
    """
    Outcome of handling one event.

    Store writes are applied in order: create (with ttl), record, update,
    and delete last. Create, record and update are skipped when delete is
    set. A stale transition left the conversation untouched.
    """
    state: SessionState
    replies: list[Reply] = field(default_factory=list)
    create: dict[str, str] = field(default_factory=dict)
    ttl: Optional[int] = None
    record: dict[str, str] = field(default_factory=dict)
    update: dict[str, str] = field(default_factory=dict)
    delete: bool = False
    completion: Optional[Completion] = None
    stale: bool = False

    @property
    def texts(self) -> list[str]:
        return [r.text for r in self.replies if r.text]

    @property
    def attachments(self) -> list[dict]:
        return [r.attachment for r in self.replies if r.attachment]


def session_state(session: dict[str, str]) -> SessionState:
    """Classify a stored field map."""
    if not session:
        return SessionState.NO_SESSION
    if "interaction" in session:
        return SessionState.AWAITING_INTERACTION
    if "searchTerm" in session:
        return SessionState.AWAITING_SUBTERM
    return SessionState.NO_SESSION


def new_session_fields(interaction: Interaction, user_id: str, username: str) -> dict[str, str]:
    """Fields written when an interaction sequence starts."""
    return {
        "interaction": interaction.interaction_id,
        "stop_word": interaction.stop_word,
        "userid": user_id,
        "username": username,
        "type": interaction.type.value,
        "next_interaction": interaction.next_interaction,
    }


def step_fields(interaction: Interaction) -> dict[str, str]:
    """Fields overwritten when moving on to the next interaction."""
    return {
        "interaction": interaction.interaction_id,
        "type": interaction.type.value,
        "next_interaction": interaction.next_interaction,
    }


def prompt_for(interaction: Interaction) -> list[Reply]:
    """The messages that ask an interaction's question."""
    if interaction.type == InteractionType.ATTACHMENT:
        replies = []
        if interaction.question:
            replies.append(Reply(text=interaction.question))
        replies.append(Reply(attachment=interaction.attachment))
        return replies
    return [Reply(text=interaction.question)]


class InteractionEngine:
    """Decides transitions for inbound events against the rule catalog."""

    def __init__(self, catalog: RuleCatalog, rng: Optional[random.Random] = None):
        self.catalog = catalog
        self.rng = rng

    def _render(self, text: str, username: str, userid: str) -> str:
        return render(text, username, userid, self.rng)

    def _interaction(self, interaction_id: str) -> Interaction:
        interaction = self.catalog.find_interaction(interaction_id)
        if interaction is None:
            raise DanglingInteractionError(interaction_id)
        return interaction

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def handle_message(self, session: dict[str, str], event: MessageEvent) -> Transition:
        """
        Handle a direct message.

        Raises:
            DanglingInteractionError: If the session or catalog names an
                interaction that doesn't exist
        """
        state = session_state(session)

        if state == SessionState.NO_SESSION:
            return self._start(event)

        if state == SessionState.AWAITING_SUBTERM:
            return self._resolve_subterm(session, event)

        if event.text == session.get("stop_word"):
            return self._cancel(session, event)

        logger.info(
            f"User {event.username} ({event.user_id}) has responded to "
            f"an interaction {session['interaction']}"
        )
        return self._advance(
            session,
            interaction_id=session["interaction"],
            answer=event.text,
            next_id=session.get("next_interaction", END),
            username=event.username,
            userid=event.user_id,
        )

    def handle_selection(self, session: dict[str, str], event: SelectionEvent) -> Transition:
        """
        Handle an option chosen from an interactive attachment.

        Raises:
            DanglingInteractionError: If the callback names an unknown
                interaction
        """
        if session_state(session) != SessionState.AWAITING_INTERACTION:
            logger.info(
                f"Callback {event.callback_id} for {event.team_id}:{event.channel_id} "
                "has no active interaction"
            )
            return Transition(
                state=SessionState.NO_SESSION,
                replies=[Reply(text=EXPIRED_RESPONSE)],
                stale=True,
            )

        if event.callback_id != session["interaction"]:
            logger.info(
                f"Ignoring callback {event.callback_id}; session is at "
                f"{session['interaction']}"
            )
            return Transition(
                state=SessionState.AWAITING_INTERACTION,
                replies=[Reply(text=ALREADY_ANSWERED_RESPONSE)],
                stale=True,
            )

        username = session.get("username") or event.username
        userid = session.get("userid") or event.user_id
        logger.info(
            f"User {username} ({userid}) has responded to interaction {event.callback_id}"
        )

        current = self._interaction(event.callback_id)
        next_id = current.resolve_next(
            event.value, default=session.get("next_interaction", current.next_interaction)
        )
        return self._advance(
            session,
            interaction_id=event.callback_id,
            answer=event.value,
            next_id=next_id,
            username=username,
            userid=userid,
        )

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _start(self, event: MessageEvent) -> Transition:
        """Match a fresh message against the rules."""
        match = self.catalog.match(event.text)

        if match is None:
            logger.info(f"Default response sent to {event.username} ({event.user_id})")
            return Transition(
                state=SessionState.NO_SESSION,
                replies=[Reply(text=self._render(
                    self.catalog.default_response, event.username, event.user_id
                ))],
            )

        rule, term = match
        transition = Transition(state=SessionState.NO_SESSION)

        if rule.response:
            logger.info(
                f"Sending standard response to search term '{term}' to "
                f"{event.username} ({event.user_id})"
            )
            transition.replies.append(Reply(text=self._render(
                rule.response, event.username, event.user_id
            )))

        if rule.attachment:
            logger.info(
                f"Sending standard attachment to search term '{term}' to "
                f"{event.username} ({event.user_id})"
            )
            transition.replies.append(Reply(attachment=rule.attachment))

        if rule.interactions:
            first = rule.find_interaction(rule.interaction_start)
            if first is None:
                raise DanglingInteractionError(rule.interaction_start)

            fields = new_session_fields(first, event.user_id, event.username)
            logger.info(
                f"Initiating interaction to term '{term}' to "
                f"{event.username} ({event.user_id})"
            )
            transition.replies.extend(prompt_for(first))

            if first.type == InteractionType.FINAL_TEXT:
                # Nothing to ask, so no session is ever stored
                return self._finalize(
                    transition, rule, fields, event.username, event.user_id
                )

            transition.state = SessionState.AWAITING_INTERACTION
            transition.create = fields
            transition.ttl = INTERACTION_TTL

        elif rule.subterms:
            logger.info(
                f"Starting sub-term dialog for term '{term}' with "
                f"{event.username} ({event.user_id})"
            )
            transition.state = SessionState.AWAITING_SUBTERM
            transition.create = {"searchTerm": term}
            transition.ttl = SUBTERM_TTL

        return transition

    def _resolve_subterm(self, session: dict[str, str], event: MessageEvent) -> Transition:
        """Answer the single follow-up message of a sub-term dialog."""
        term = session["searchTerm"]
        rule = self.catalog.find_rule_by_term(term)

        found = None
        if rule is not None:
            for subterm in rule.subterms:
                hit = subterm.matches(event.text)
                if hit is None:
                    continue
                if found is None:
                    found = subterm
                    logger.info(
                        f"Sub-term '{hit}' matched for {event.username} ({event.user_id})"
                    )
                else:
                    logger.debug(f"Additional sub-term '{hit}' also matched; ignoring")
        else:
            logger.warning(f"No rule owns search term '{term}' any more")

        if found is not None:
            reply = self._render(found.response, event.username, event.user_id)
        else:
            reply = SUBTERM_FALLBACK_RESPONSE

        return Transition(
            state=SessionState.NO_SESSION,
            replies=[Reply(text=reply)],
            delete=True,
        )

    def _cancel(self, session: dict[str, str], event: MessageEvent) -> Transition:
        logger.info(
            f"User {event.username} ({event.user_id}) has cancelled "
            f"interaction {session.get('interaction')}"
        )
        if self.catalog.interaction_cancelled_response:
            text = self._render(
                self.catalog.interaction_cancelled_response, event.username, event.user_id
            )
        else:
            text = DEFAULT_CANCELLED_RESPONSE

        return Transition(
            state=SessionState.NO_SESSION,
            replies=[Reply(text=text)],
            delete=True,
        )

    def _advance(
        self,
        session: dict[str, str],
        interaction_id: str,
        answer: str,
        next_id: str,
        username: str,
        userid: str
    ) -> Transition:
        """Record an answer and move to next_id (or finish)."""
        record = {f"{RESPONSE_PREFIX}{interaction_id}": answer}
        results = {**session, **record}

        transition = Transition(
            state=SessionState.AWAITING_INTERACTION,
            record=record,
        )

        if next_id == END:
            rule = self.catalog.find_rule_by_interaction(interaction_id)
            return self._finalize(transition, rule, results, username, userid)

        nxt = self._interaction(next_id)
        transition.update = step_fields(nxt)
        transition.replies.extend(prompt_for(nxt))

        if nxt.type == InteractionType.FINAL_TEXT:
            results.update(transition.update)
            rule = self.catalog.find_rule_by_interaction(nxt.interaction_id)
            return self._finalize(transition, rule, results, username, userid)

        logger.info(f"Sending interaction {nxt.interaction_id} to user {username} ({userid})")
        return transition

    def _finalize(
        self,
        transition: Transition,
        rule: Optional[Rule],
        results: dict[str, str],
        username: str,
        userid: str
    ) -> Transition:
        """Close the session, thank the user and hand results to end modules."""
        logger.info(
            f"User {username} ({userid}) has completed all interactions, "
            f"final step {results.get('interaction')}"
        )
        logger.debug(f"Interaction RESULT: {results}")

        if self.catalog.interaction_complete_response:
            text = self._render(self.catalog.interaction_complete_response, username, userid)
        else:
            text = DEFAULT_COMPLETE_RESPONSE

        transition.replies.append(Reply(text=text))
        transition.state = SessionState.NO_SESSION
        transition.delete = True
        transition.create = {}
        transition.ttl = None

        if rule is None:
            logger.warning(f"Couldn't find rule for interaction {results.get('interaction')}")
        else:
            transition.completion = Completion(rule=rule, results=results)

        return transition
