"""CLI for telelog.

Usage:
    telelog run
    telelog --config /etc/telelog.toml rules
    telelog test
    telelog send "disk replaced on nas01"
"""

import asyncio
from pathlib import Path

import click

from telelog.config import DEFAULT_CONFIG_PATH, Config, ConfigLoadError
from telelog.logging import configure_logging, get_logger
from telelog.relay import RelayDaemon, RuleEngine, TelegramClient, run_relay

log = get_logger(__name__)


def load_config(config_path: Path) -> Config:
    """Load config or exit with an error."""
    try:
        return Config.from_file(config_path)
    except ConfigLoadError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)


def require_credentials(config: Config) -> None:
    """Exit with an error if the bot token or chat id is missing."""
    try:
        config.require_credentials()
    except ConfigLoadError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)


@click.group()
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    default=DEFAULT_CONFIG_PATH,
    show_default=True,
    help="Config file path (.toml or .yaml)",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx: click.Context, config_path: Path, verbose: bool) -> None:
    """Relay systemd journal entries to a Telegram chat."""
    ctx.ensure_object(dict)
    config = load_config(config_path)
    configure_logging("telelog", "DEBUG" if verbose else config.log_level)
    ctx.obj["config"] = config


@main.command("run")
@click.pass_context
def relay_run(ctx: click.Context) -> None:
    """Run the relay daemon.

    Tails the journal, filters entries through the configured rules and
    sends them to Telegram until SIGTERM or SIGINT.
    """
    config = ctx.obj["config"]
    require_credentials(config)
    log.info("Configuration loaded", path=str(ctx.parent.params["config_path"]))
    run_relay(config)


@main.command("test")
@click.pass_context
def relay_test(ctx: click.Context) -> None:
    """Send a test message to verify the bot token and chat id."""
    config = ctx.obj["config"]
    require_credentials(config)

    async def _send() -> bool:
        daemon = RelayDaemon(config)
        return await daemon.send_test_message()

    if asyncio.run(_send()):
        click.echo("Test message sent successfully!")
    else:
        click.echo("Failed to send test message")
        raise SystemExit(1)


@main.command("send")
@click.argument("message")
@click.pass_context
def relay_send(ctx: click.Context, message: str) -> None:
    """Send a custom HTML message to the configured chat."""
    config = ctx.obj["config"]
    require_credentials(config)

    async def _send() -> bool:
        client = TelegramClient(config.api_key, config.chat_id, api_url=config.telegram.api_url)
        try:
            result = await client.send_message(message)
        finally:
            await client.aclose()
        return result.ok

    if asyncio.run(_send()):
        click.echo("Message sent!")
    else:
        click.echo("Failed to send message")
        raise SystemExit(1)


@main.command("rules")
@click.pass_context
def relay_rules(ctx: click.Context) -> None:
    """Show the compiled rules in evaluation order."""
    config = ctx.obj["config"]
    engine = RuleEngine.from_config(config.filters)

    if not len(engine.rule_set):
        click.echo("No allow/deny rules: every entry is relayed.")
    for group in engine.rule_set:
        click.echo(f"[{group.priority:>3}] {group.action.value.upper()}")
        for rule in group.rules:
            field = getattr(rule.field, "value", rule.field)
            patterns = ", ".join(p.pattern for p in rule.patterns)
            click.echo(f"        {field} {rule.logic.value}: {patterns}")

    if engine.native:
        click.echo("")
        click.echo("Native journal matches (OR between groups):")
        for rules in engine.native.groups:
            terms = [f"{r.field}={'|'.join(r.values)} ({r.logic.value})" for r in rules]
            click.echo(f"  - {' AND '.join(terms)}")


if __name__ == "__main__":
    main()
