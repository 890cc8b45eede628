"""Shared test fixtures for the dialog bot."""
import random

import pytest

from dialogbot.dispatcher import Dispatcher
from dialogbot.engine import InteractionEngine
from dialogbot.models import EndModule
from dialogbot.plugin_loader import ModuleRegistry
from dialogbot.rules import parse_rules
from dialogbot.storage import MemorySessionStore


@pytest.fixture
def rules_document() -> dict:
    """A rules document exercising every rule shape."""
    return {
        "default": "Sorry {{ Username }}, I don't understand.",
        "interaction_cancelled_response": "Cancelled for {{ Username }}.",
        "interaction_complete_response": "Thanks {{ Username }}!",
        "rules": [
            {
                "terms": ["signup"],
                "interaction_start": "q1",
                "interaction_end_mods": ["RecordingModule", "MissingModule"],
                "interactions": [
                    {
                        "interaction_id": "q1",
                        "stop_word": "stop",
                        "type": "text",
                        "question": "Name?",
                        "next_interaction": "end",
                    },
                ],
            },
            {
                "terms": ["survey"],
                "response": "Let's do a quick survey.",
                "interaction_start": "s1",
                "interaction_end_mods": ["RecordingModule"],
                "interactions": [
                    {
                        "interaction_id": "s1",
                        "stop_word": "quit",
                        "type": "attachment",
                        "question": "Do you like it?",
                        "next_interaction": "s2",
                        "attachment": {
                            "fallback": "Pick one",
                            "callback_id": "s1",
                            "actions": [
                                {"name": "like", "type": "button", "value": "yes"},
                                {"name": "like", "type": "button", "value": "no"},
                            ],
                        },
                        "next_interaction_dynamic": [
                            {"response": "yes", "next_interaction": "s2"},
                            {"response": "no", "next_interaction": "end"},
                        ],
                    },
                    {
                        "interaction_id": "s2",
                        "stop_word": "quit",
                        "type": "text",
                        "question": "What do you like most?",
                        "next_interaction": "s3",
                    },
                    {
                        "interaction_id": "s3",
                        "stop_word": "quit",
                        "type": "finalText",
                        "question": "That's everything.",
                        "next_interaction": "end",
                    },
                ],
            },
            {
                "terms": ["help"],
                "response": "Password or VPN?",
                "subterms": [
                    {"terms": ["password"], "response": "Reset it, {{ Username }}."},
                    {"terms": ["vpn", "pass"], "response": "VPN docs."},
                ],
            },
            {
                "terms": ["goodbye"],
                "interaction_start": "bye",
                "interactions": [
                    {
                        "interaction_id": "bye",
                        "stop_word": "stop",
                        "type": "finalText",
                        "question": "Bye for now.",
                        "next_interaction": "end",
                    },
                ],
            },
            {
                "terms": ["hello", "sign"],
                "response": "[[Hi||Hey]] {{ Username }}",
            },
        ],
    }


@pytest.fixture
def catalog(rules_document):
    return parse_rules(rules_document)


@pytest.fixture
def engine(catalog):
    return InteractionEngine(catalog, rng=random.Random(7))


@pytest.fixture
def store():
    return MemorySessionStore()


class RecordingModule(EndModule):
    """End module that remembers every call."""

    def __init__(self, fail: bool = False):
        self.calls = []
        self.fail = fail

    def name(self) -> str:
        return "RecordingModule"

    def declared_env_vars(self) -> list[str]:
        return ["Token"]

    def run(self, payload, env, interaction_questions):
        self.calls.append((payload, env, interaction_questions))
        if self.fail:
            raise RuntimeError("module exploded")


@pytest.fixture
def recording_module():
    return RecordingModule()


@pytest.fixture
def registry(recording_module):
    return ModuleRegistry([recording_module])


@pytest.fixture
def dispatcher(engine, store, registry):
    return Dispatcher(engine, store, registry)


class FakeSay:
    """Collects everything the bot says."""

    def __init__(self):
        self.messages = []

    def __call__(self, text=None, **kwargs):
        self.messages.append({"text": text, **kwargs})

    @property
    def texts(self):
        return [m["text"] for m in self.messages if not m.get("attachments")]


class FakeClient:
    """Minimal stand-in for slack_sdk.WebClient."""

    def __init__(self, real_name="Alice Smith"):
        self.real_name = real_name
        self.lookups = []

    def users_info(self, user):
        self.lookups.append(user)
        return {"user": {"id": user, "name": "alice", "real_name": self.real_name}}


@pytest.fixture
def say():
    return FakeSay()


@pytest.fixture
def client():
    return FakeClient()


def dm(text, /, user="U123", channel="D456", team="T789", **extra):
    """Build a direct-message event as delivered by Slack."""
    event = {
        "type": "message",
        "channel_type": "im",
        "user": user,
        "channel": channel,
        "team": team,
        "text": text,
    }
    event.update(extra)
    return event
