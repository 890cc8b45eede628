"""
Webhook entry point for interactive message callbacks (buttons and menus).

Slack POSTs a form-encoded body whose "payload" field holds the JSON
callback. The reply body replaces the original interactive message.
"""

import json
import logging
from typing import Optional
from urllib.parse import parse_qs

from fastapi import BackgroundTasks, FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from slack_sdk.signature import SignatureVerifier

from .dispatcher import Dispatcher
from .engine import SelectionEvent, Transition
from .errors import WebhookPayloadError

logger = logging.getLogger(__name__)

WEBHOOK_PATH = "/slack/message_handler"


def parse_payload(payload: dict) -> SelectionEvent:
    """
    Extract the selection from an interactive message callback.

    Raises:
        WebhookPayloadError: If required fields are missing
    """
    if not isinstance(payload, dict):
        raise WebhookPayloadError("Payload must be a JSON object")

    try:
        team_id = payload["team"]["id"]
        channel_id = payload["channel"]["id"]
        callback_id = payload["callback_id"]
        action = payload["actions"][0]
    except (KeyError, IndexError, TypeError) as e:
        raise WebhookPayloadError(f"Malformed interaction callback: missing {e}") from e

    if not isinstance(action, dict):
        raise WebhookPayloadError("Interaction action must be an object")

    if action.get("type") == "select":
        # The user has submitted a select menu item
        options = action.get("selected_options") or []
        if not isinstance(options, list):
            raise WebhookPayloadError("selected_options must be a list")
        if len(options) == 1:
            if not isinstance(options[0], dict):
                raise WebhookPayloadError("Selected option must be an object")
            selected = options[0].get("value", "")
        else:
            selected = ""
    else:
        # The user has simply clicked a button
        selected = action.get("value", "")

    user = payload.get("user") or {}
    if not isinstance(user, dict):
        raise WebhookPayloadError("Interaction user must be an object")

    for name, value in (("team", team_id), ("channel", channel_id),
                        ("callback_id", callback_id), ("value", selected)):
        if not isinstance(value, str):
            raise WebhookPayloadError(f"Interaction {name} must be a string")

    return SelectionEvent(
        team_id=team_id,
        channel_id=channel_id,
        callback_id=callback_id,
        value=selected,
        user_id=user.get("id", ""),
        username=user.get("name", ""),
    )


def build_response(event: SelectionEvent, transition: Transition) -> dict:
    """Build the JSON body Slack uses to update the interactive message."""
    texts = transition.texts

    if transition.stale:
        body = {
            "text": "\n".join(texts),
            "replace_original": False,
            "response_type": "in_channel",
        }
    else:
        body = {
            "text": "\n".join([f"You selected: {event.value}"] + texts),
            "replace_original": True,
            "response_type": "in_channel",
        }

    attachments = transition.attachments
    if attachments:
        body["attachments"] = attachments
    return body


class WebhookRouter:
    """Translates interaction callbacks into engine selections."""

    def __init__(self, dispatcher: Dispatcher):
        self.dispatcher = dispatcher

    def handle_payload(self, payload: dict) -> tuple[dict, Transition]:
        """
        Process one decoded callback payload.

        Returns:
            Response body for Slack, and the transition (for end modules)

        Raises:
            WebhookPayloadError: If the payload is malformed
        """
        event = parse_payload(payload)
        transition = self.dispatcher.process_selection(event)
        return build_response(event, transition), transition


def create_app(router: WebhookRouter, signing_secret: Optional[str] = None) -> FastAPI:
    """
    Build the FastAPI app serving the interaction webhook.

    Requests are signature-checked when a signing secret is given.
    """
    app = FastAPI(title="dialogbot webhook")
    verifier = SignatureVerifier(signing_secret) if signing_secret else None

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.post(WEBHOOK_PATH)
    async def message_handler(request: Request, background_tasks: BackgroundTasks):
        raw_body = await request.body()

        if verifier is not None and not verifier.is_valid_request(raw_body, dict(request.headers)):
            logger.warning("Error validating request signature")
            return JSONResponse(status_code=401, content={"error": "invalid signature"})

        try:
            form = parse_qs(raw_body.decode("utf-8"))
            payload = json.loads(form.get("payload", [""])[0])
            body, transition = await run_in_threadpool(router.handle_payload, payload)
        except (UnicodeDecodeError, json.JSONDecodeError, WebhookPayloadError) as e:
            logger.warning(f"Error parsing JSON from slack interaction callback: {e}")
            return JSONResponse(status_code=400, content={"error": "invalid payload"})

        # Modules run after the user has had their reply
        background_tasks.add_task(router.dispatcher.finish, transition)
        return JSONResponse(content=body)

    return app
