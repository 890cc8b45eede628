"""
Slack Webhook Module - EndModule Implementation

Posts a summary of a completed interaction to a Slack incoming webhook,
with one attachment field per answered question.
"""

import sys
import time
import logging
from pathlib import Path

import requests

# Add project root for dialogbot imports
ROOT_DIR = Path(__file__).parent.parent.parent
sys.path.insert(0, str(ROOT_DIR))

from dialogbot.errors import ModuleError
from dialogbot.models import EndModule

logger = logging.getLogger(__name__)

RESPONSE_PREFIX = "response:"
REQUEST_TIMEOUT = 30
SUMMARY_TEXT = "dialogbot received a complete response from someone"


def build_message(payload: dict[str, str], interaction_questions: dict[str, str]) -> dict:
    """Build the webhook body for a completed interaction."""
    attachment = {
        "fallback": SUMMARY_TEXT,
        "color": "#36a64f",
        "footer": "dialogbot",
        "ts": int(time.time()),
        "fields": [],
    }

    if payload.get("userid"):
        attachment["text"] = f"Response from <@{payload['userid']}>"

    for interaction_id, question in interaction_questions.items():
        answer = payload.get(f"{RESPONSE_PREFIX}{interaction_id}")
        if answer is None:
            continue
        attachment["fields"].append({
            "title": question,
            "value": answer,
            "short": False,
        })

    return {"text": SUMMARY_TEXT, "attachments": [attachment]}


class SlackWebhookModule(EndModule):
    """Sends interaction results to a Slack incoming webhook."""

    def name(self) -> str:
        return "SlackWebhookModule"

    def declared_env_vars(self) -> list[str]:
        return ["URL"]

    def run(
        self,
        payload: dict[str, str],
        env: dict[str, str],
        interaction_questions: dict[str, str]
    ) -> None:
        url = env.get("SLACKWEBHOOKMODULE_URL")
        if not url:
            raise ModuleError("Missing SlackWebhookModule URL param")

        message = build_message(payload, interaction_questions)

        try:
            resp = requests.post(url, json=message, timeout=REQUEST_TIMEOUT)
            resp.raise_for_status()
        except requests.exceptions.RequestException as e:
            raise ModuleError(f"Slack webhook request failed: {e}") from e

        logger.info(f"Posted interaction summary with {len(message['attachments'][0]['fields'])} fields")


def get_module() -> EndModule:
    """Factory function called by plugin loader."""
    return SlackWebhookModule()
