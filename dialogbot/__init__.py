"""
Core package for the rule-driven Slack dialog bot.

Contains the rule catalog, interaction engine, session storage, routers and
end-module loading.
"""

from .models import (
    END, DynamicNext, EndModule, Interaction, InteractionType, Rule, RuleCatalog, SubTerm
)
from .errors import (
    ConfigError, DanglingInteractionError, DialogError, ModuleError,
    RuleValidationError, SessionStoreError, TemplateRenderError, WebhookPayloadError
)
from .rules import load_rules, parse_rules, validate_catalog, dump_rules
from .templates import render, render_template, resolve_variants
from .storage import (
    SessionStore, RedisSessionStore, MemorySessionStore, create_session_store, session_key
)
from .engine import (
    Completion, InteractionEngine, MessageEvent, Reply, SelectionEvent, SessionState, Transition
)
from .plugin_loader import ModuleRegistry, PluginLoader
from .dispatcher import Dispatcher
from .config import BotConfig, load_config

__version__ = "1.0.0"

__all__ = [
    'END',
    'DynamicNext',
    'EndModule',
    'Interaction',
    'InteractionType',
    'Rule',
    'RuleCatalog',
    'SubTerm',
    'ConfigError',
    'DanglingInteractionError',
    'DialogError',
    'ModuleError',
    'RuleValidationError',
    'SessionStoreError',
    'TemplateRenderError',
    'WebhookPayloadError',
    'load_rules',
    'parse_rules',
    'validate_catalog',
    'dump_rules',
    'render',
    'render_template',
    'resolve_variants',
    'SessionStore',
    'RedisSessionStore',
    'MemorySessionStore',
    'create_session_store',
    'session_key',
    'Completion',
    'InteractionEngine',
    'MessageEvent',
    'Reply',
    'SelectionEvent',
    'SessionState',
    'Transition',
    'ModuleRegistry',
    'PluginLoader',
    'Dispatcher',
    'BotConfig',
    'load_config',
]
