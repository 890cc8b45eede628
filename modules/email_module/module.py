"""
Email Module - EndModule Implementation

Emails the full result map of a completed interaction over SMTP.
"""

import sys
import smtplib
import logging
from email.message import EmailMessage
from email.utils import formataddr
from pathlib import Path

# Add project root for dialogbot imports
ROOT_DIR = Path(__file__).parent.parent.parent
sys.path.insert(0, str(ROOT_DIR))

from dialogbot.errors import ModuleError
from dialogbot.models import EndModule

logger = logging.getLogger(__name__)

SENDER_NAME = "dialogbot"
SUBJECT = "Email from the dialogbot slackbot"
SMTP_TIMEOUT = 30


def parse_server(value: str) -> tuple[str, int]:
    """Split host:port, raising ModuleError if it isn't one."""
    host, _, port = value.rpartition(":")
    if not host or not port:
        raise ModuleError(f"Invalid SMTP server '{value}', expected host:port")
    try:
        return host, int(port)
    except ValueError:
        raise ModuleError(f"Invalid SMTP port in '{value}'")


def build_body(payload: dict[str, str]) -> str:
    lines = ["dialogbot received a complete response from someone.", "Here is the data:", ""]
    for key, value in sorted(payload.items()):
        lines.append(key)
        lines.append(value)
        lines.append("")
    return "\n".join(lines)


class EmailModule(EndModule):
    """Sends interaction results by email."""

    def name(self) -> str:
        return "EmailModule"

    def declared_env_vars(self) -> list[str]:
        return ["FROM", "TO", "SMTPSERVER", "USERNAME", "PASSWORD", "SKIPTLS"]

    def run(
        self,
        payload: dict[str, str],
        env: dict[str, str],
        interaction_questions: dict[str, str]
    ) -> None:
        sender = env.get("EMAILMODULE_FROM")
        recipient = env.get("EMAILMODULE_TO")
        if not sender or not recipient:
            raise ModuleError("EmailModule needs both FROM and TO")

        host, port = parse_server(env.get("EMAILMODULE_SMTPSERVER", ""))

        message = EmailMessage()
        message["From"] = formataddr((SENDER_NAME, sender))
        message["To"] = recipient
        message["Subject"] = SUBJECT
        message.set_content(build_body(payload))

        skip_tls = bool(env.get("EMAILMODULE_SKIPTLS"))

        try:
            with smtplib.SMTP(host, port, timeout=SMTP_TIMEOUT) as smtp:
                if not skip_tls:
                    smtp.starttls()
                    smtp.login(env.get("EMAILMODULE_USERNAME", ""), env.get("EMAILMODULE_PASSWORD", ""))
                smtp.send_message(message)
        except (smtplib.SMTPException, OSError) as e:
            raise ModuleError(f"Failed to send email: {e}") from e

        logger.info(f"Emailed interaction results to {recipient}")


def get_module() -> EndModule:
    """Factory function called by plugin loader."""
    return EmailModule()
