"""
Exception hierarchy for the dialog bot.

Configuration and rule errors are fatal at startup. Everything else is
scoped to a single conversation and handled by the routers.
"""


class DialogError(Exception):
    """Base exception for dialog bot errors."""
    pass


class ConfigError(DialogError):
    """Missing or invalid process configuration."""
    pass


class RuleValidationError(DialogError):
    """The rules document is malformed or internally inconsistent."""
    pass


class SessionStoreError(DialogError):
    """The session store could not be read, written or locked."""
    pass


class TemplateRenderError(DialogError):
    """A response template could not be rendered."""
    pass


class DanglingInteractionError(DialogError):
    """An interaction id referenced at runtime does not exist."""

    def __init__(self, interaction_id: str):
        self.interaction_id = interaction_id
        super().__init__(f"No interaction found with ID: '{interaction_id}'")


class ModuleError(DialogError):
    """An end-of-interaction module failed."""
    pass


class WebhookPayloadError(DialogError):
    """An interactive callback payload could not be parsed."""
    pass
