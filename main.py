"""
Rule-driven Slack Dialog Bot - Main Entry Point

Commands:
- start:   run the bot on the Socket Mode message stream
- web:     run the webhook server for interactive message callbacks
- modules: list the loaded end modules and their environment variables
- dump:    load, validate and print the rules file
"""

import sys
import argparse
import logging
from pathlib import Path

# Add current directory to path for dialogbot imports
BOT_DIR = Path(__file__).parent
sys.path.insert(0, str(BOT_DIR))

from dialogbot.config import BotConfig, load_config
from dialogbot.dispatcher import Dispatcher
from dialogbot.engine import InteractionEngine
from dialogbot.errors import ConfigError, RuleValidationError, SessionStoreError
from dialogbot.plugin_loader import ModuleRegistry, PluginLoader
from dialogbot.rules import dump_rules, load_rules
from dialogbot.storage import create_session_store

logger = logging.getLogger("dialogbot")


def parse_args(argv: list[str] | None = None):
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(description="Rule-driven Slack dialog bot")
    parser.add_argument(
        "-d", "--debug",
        action="store_true",
        help="Enable debug output"
    )
    parser.add_argument(
        "--env-file",
        type=str,
        default=None,
        help="Path to a .env file (defaults to ./.env)"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("start", aliases=["s"], help="Start the slack bot.")
    subparsers.add_parser("web", aliases=["w"], help="Start the web app.")
    subparsers.add_parser("modules", help="Display the loaded modules")
    subparsers.add_parser(
        "dump", help="Dump the rules json file, makes sure it parses too"
    )
    return parser.parse_args(argv)


def configure_logging(debug: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


def load_registry(config: BotConfig) -> ModuleRegistry:
    loader = PluginLoader(
        root_dir=Path(config.modules_dir) if config.modules_dir else None,
        allowed_modules=config.enabled_modules,
    )
    registry = loader.load_registry()
    logger.info(f"Loaded {len(registry)} modules: {registry.names()}")
    return registry


def build_dispatcher(config: BotConfig) -> Dispatcher:
    """Load rules, connect storage and load modules."""
    catalog = load_rules(config.rules_file)
    store = create_session_store(config)
    registry = load_registry(config)
    return Dispatcher(InteractionEngine(catalog), store, registry)


# ============================================================================
# COMMANDS
# ============================================================================

def start_bot(config: BotConfig) -> None:
    """Start the bot on the Socket Mode message stream."""
    from slack_bolt import App
    from slack_bolt.adapter.socket_mode import SocketModeHandler

    required = ["SLACK_BOT_TOKEN", "SLACK_APP_TOKEN"]
    if config.session_backend == "redis":
        required.append("REDIS_ADDR")
    config.require(*required)

    dispatcher = build_dispatcher(config)
    app = App(token=config.slack_bot_token)

    @app.event("message")
    def handle_message(event, say, client, context):
        """Handle incoming messages. Only DMs get a response."""
        dispatcher.handle_dm(event, say, client, team_id=context.team_id or "")

    @app.event("member_joined_channel")
    def handle_member_joined(event, say, context):
        dispatcher.handle_member_joined(event, say, bot_user_id=context.bot_user_id)

    @app.event("app_mention")
    def handle_mention(event, say):
        """Handle @mentions of the bot."""
        say("DM me to get started!")

    handler = SocketModeHandler(app, config.slack_app_token)

    logger.info("Starting Slack dialog bot...")
    logger.info("Bot is running! Press Ctrl+C to stop.")
    handler.start()


def start_web(config: BotConfig) -> None:
    """Start the webhook server for interactive callbacks."""
    import uvicorn
    from dialogbot.webhook import WebhookRouter, create_app

    if config.session_backend == "redis":
        config.require("REDIS_ADDR")
    if not config.slack_signing_secret:
        logger.warning("SLACK_SIGNING_SECRET not set - webhook signatures will not be checked")

    dispatcher = build_dispatcher(config)
    app = create_app(WebhookRouter(dispatcher), config.slack_signing_secret or None)

    logger.info(f"Starting web server on '{config.web_addr}'....")
    uvicorn.run(app, host=config.web_host, port=config.web_port)


def show_modules(config: BotConfig) -> None:
    """Print the loaded modules and their environment variables."""
    registry = load_registry(config)
    print(f"Number of modules loaded: {len(registry)}")
    print("Listing loaded modules:")
    for name in registry.names():
        module = registry.get(name)
        print(f"Module: {name}")
        if module.declared_env_vars():
            print("EnvVars:")
            for var, adjusted in zip(module.declared_env_vars(), module.env_var_names()):
                print(f"\t{var} ({adjusted})")


def show_rules(config: BotConfig) -> None:
    """Print the validated rules file."""
    catalog = load_rules(config.rules_file)
    print(dump_rules(catalog))


COMMANDS = {
    "start": start_bot,
    "s": start_bot,
    "web": start_web,
    "w": start_web,
    "modules": show_modules,
    "dump": show_rules,
}


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    configure_logging(args.debug)

    try:
        config = load_config(args.env_file)
        COMMANDS[args.command](config)
    except (ConfigError, RuleValidationError, SessionStoreError) as e:
        logger.error(f"Error: {e}")
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
