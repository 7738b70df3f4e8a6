"""CLI entry point for roomwatch.

Commands:
    roomwatch summary        — urgent messages plus per-room digests
    roomwatch urgent         — only the most pressing urgent messages
    roomwatch reply          — send a (threaded) reply
    roomwatch context        — recent messages and participants of one room
    roomwatch rooms          — accessible / inaccessible room inventory
    roomwatch diagnose       — why the service credential can or can't read
    roomwatch detect-mode    — probe access modes and recommend one
    roomwatch messages       — fetch messages through an access mode
    roomwatch auth-url       — start the delegated authorization flow
    roomwatch complete-auth  — exchange an authorization code
    roomwatch push-setup     — register a push (webhook) subscription
    roomwatch filter-stats   — room filter configuration and last result
"""

import asyncio
import logging
import sys

import click

from roomwatch.config import AppConfig, load_config
from roomwatch.errors import ConfigError, RoomwatchError
from roomwatch.schemas.access import AccessMode

logger = logging.getLogger("roomwatch")


def _load_config(*, require_credentials: bool = True) -> AppConfig:
    """Load config, failing loudly if it is missing or malformed."""
    try:
        config = load_config()
        if require_credentials:
            config.require_credentials()
    except ConfigError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)
    return config


def _run(coro):
    try:
        return asyncio.run(coro)
    except RoomwatchError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)


def _echo_model(model) -> None:
    click.echo(model.model_dump_json(indent=2))


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """Roomwatch — chat message triage and room selection."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


# ------------------------------------------------------------------
# Triage
# ------------------------------------------------------------------


@cli.command()
@click.option("--hours", default=24.0, show_default=True, help="Lookback period in hours.")
@click.option("--max-per-room", default=50, show_default=True, help="Messages read per room.")
def summary(hours: float, max_per_room: int) -> None:
    """Urgent messages plus digests of routine activity."""
    config = _load_config()
    _run(_summary_async(config, hours, max_per_room))


async def _summary_async(config: AppConfig, hours: float, max_per_room: int) -> None:
    from roomwatch.orchestrator.service import TriageService

    async with TriageService(config) as service:
        _echo_model(await service.get_prioritized_summary(since_hours=hours, max_per_room=max_per_room))


@cli.command()
@click.option("--limit", "-n", default=10, show_default=True, help="Max messages to show.")
@click.option("--hours", default=24.0, show_default=True, help="Lookback period in hours.")
def urgent(limit: int, hours: float) -> None:
    """Most pressing urgent messages."""
    config = _load_config()
    _run(_urgent_async(config, limit, hours))


async def _urgent_async(config: AppConfig, limit: int, hours: float) -> None:
    from roomwatch.orchestrator.service import TriageService

    async with TriageService(config) as service:
        messages = await service.get_urgent_only(limit=limit, since_hours=hours)
    if not messages:
        click.echo("No urgent messages.")
        return
    for message in messages:
        marker = "!!" if message.requires_immediate else " !"
        click.echo(f"{marker} [{message.room_title}] {message.sender}: {message.text[:120]}")
        click.echo(f"     reasons: {', '.join(message.urgency_reasons)}  id: {message.id}")


@cli.command()
@click.argument("room_id")
@click.argument("text")
@click.option("--parent", "parent_id", default=None, help="Reply in the thread of this message id.")
def reply(room_id: str, text: str, parent_id: str | None) -> None:
    """Send TEXT to ROOM_ID."""
    config = _load_config()
    _run(_reply_async(config, room_id, text, parent_id))


async def _reply_async(config: AppConfig, room_id: str, text: str, parent_id: str | None) -> None:
    from roomwatch.orchestrator.service import TriageService

    async with TriageService(config) as service:
        _echo_model(await service.send_reply(room_id, text, parent_message_id=parent_id))


@cli.command()
@click.argument("room_id")
@click.option("--count", "-n", default=20, show_default=True, help="Messages to include.")
def context(room_id: str, count: int) -> None:
    """Recent messages and participants of ROOM_ID."""
    config = _load_config()
    _run(_context_async(config, room_id, count))


async def _context_async(config: AppConfig, room_id: str, count: int) -> None:
    from roomwatch.orchestrator.service import TriageService

    async with TriageService(config) as service:
        _echo_model(await service.get_room_context(room_id, count=count))


@cli.command()
def rooms() -> None:
    """Inventory of accessible and inaccessible rooms."""
    config = _load_config()
    _run(_rooms_async(config))


async def _rooms_async(config: AppConfig) -> None:
    from roomwatch.orchestrator.service import TriageService

    async with TriageService(config) as service:
        _echo_model(await service.get_rooms_info())


# ------------------------------------------------------------------
# Access modes
# ------------------------------------------------------------------


@cli.command()
def diagnose() -> None:
    """Diagnose what the service credential can read."""
    config = _load_config()
    _run(_diagnose_async(config))


async def _diagnose_async(config: AppConfig) -> None:
    from roomwatch.orchestrator.service import TriageService

    async with TriageService(config) as service:
        diagnosis = await service.diagnose_credential()
    _echo_model(diagnosis)
    if diagnosis.issue is not None:
        click.echo(f"Likely issue: {diagnosis.issue.value}", err=True)


@cli.command("detect-mode")
def detect_mode() -> None:
    """Probe every access mode and recommend one."""
    config = _load_config(require_credentials=False)
    _run(_detect_mode_async(config))


async def _detect_mode_async(config: AppConfig) -> None:
    from roomwatch.orchestrator.service import TriageService

    async with TriageService(config) as service:
        _echo_model(await service.detect_best_mode())


@cli.command()
@click.option("--hours", default=24.0, show_default=True, help="Lookback period in hours.")
@click.option(
    "--mode",
    type=click.Choice([m.value for m in AccessMode]),
    default=None,
    help="Access mode (default: detect the best one first).",
)
def messages(hours: float, mode: str | None) -> None:
    """Fetch messages through an access mode."""
    config = _load_config(require_credentials=False)
    _run(_messages_async(config, hours, AccessMode(mode) if mode else None))


async def _messages_async(config: AppConfig, hours: float, mode: AccessMode | None) -> None:
    from roomwatch.orchestrator.service import TriageService

    async with TriageService(config) as service:
        if mode is None and config.preferred_mode is None:
            detection = await service.detect_best_mode()
            click.echo(f"Using {detection.recommended_mode.value} mode", err=True)
        _echo_model(await service.get_messages_via_best_mode(since_hours=hours, mode=mode))


@cli.command("auth-url")
@click.option("--client-id", default=None, help="OAuth client id (default: OAUTH_CLIENT_ID).")
@click.option("--client-secret", default=None, help="OAuth client secret (default: OAUTH_CLIENT_SECRET).")
@click.option("--redirect-uri", default=None, help="Redirect URI registered for the client.")
def auth_url(client_id: str | None, client_secret: str | None, redirect_uri: str | None) -> None:
    """Print the delegated authorization URL."""
    config = _load_config(require_credentials=False)
    delegated = config.delegated
    client_id = client_id or (delegated.client_id if delegated else None)
    client_secret = client_secret or (delegated.client_secret if delegated else None)
    if not client_id or not client_secret:
        click.echo("Error: OAuth client id and secret are required.", err=True)
        sys.exit(1)
    _run(_auth_url_async(config, client_id, client_secret, redirect_uri))


async def _auth_url_async(
    config: AppConfig, client_id: str, client_secret: str, redirect_uri: str | None
) -> None:
    from roomwatch.orchestrator.service import TriageService

    async with TriageService(config) as service:
        _echo_model(service.configure_delegated_auth(client_id, client_secret, redirect_uri))


@cli.command("complete-auth")
@click.argument("code")
def complete_auth(code: str) -> None:
    """Exchange an authorization CODE for a delegated credential."""
    config = _load_config(require_credentials=False)
    if config.delegated is None:
        click.echo("Error: OAUTH_CLIENT_ID / OAUTH_CLIENT_SECRET are not configured.", err=True)
        sys.exit(1)
    if not _run(_complete_auth_async(config, code)):
        sys.exit(1)


async def _complete_auth_async(config: AppConfig, code: str) -> bool:
    from roomwatch.orchestrator.service import TriageService

    async with TriageService(config) as service:
        result = await service.complete_auth_flow(code)
    _echo_model(result)
    if result.success:
        click.echo("Store the tokens as OAUTH_ACCESS_TOKEN / OAUTH_REFRESH_TOKEN.", err=True)
    return result.success


@cli.command("push-setup")
@click.option("--url", "target_url", default=None, help="Public delivery URL (default: PUSH_WEBHOOK_URL).")
@click.option("--secret", default=None, help="Signing secret (default: PUSH_WEBHOOK_SECRET).")
def push_setup(target_url: str | None, secret: str | None) -> None:
    """Register a push subscription for new messages."""
    config = _load_config()
    target_url = target_url or config.push.webhook_url
    secret = secret or config.push.webhook_secret
    if not target_url or not secret:
        click.echo("Error: a delivery URL and secret are required.", err=True)
        sys.exit(1)
    _run(_push_setup_async(config, target_url, secret))


async def _push_setup_async(config: AppConfig, target_url: str, secret: str) -> None:
    from roomwatch.orchestrator.service import TriageService

    async with TriageService(config) as service:
        _echo_model(await service.configure_push_notifications(target_url, secret))


# ------------------------------------------------------------------
# Room filter
# ------------------------------------------------------------------


@cli.command("filter-stats")
@click.option("--refresh", is_flag=True, help="Recompute the room filter before reporting.")
def filter_stats(refresh: bool) -> None:
    """Show the room filter configuration and its last result."""
    config = _load_config(require_credentials=refresh)
    _run(_filter_stats_async(config, refresh))


async def _filter_stats_async(config: AppConfig, refresh: bool) -> None:
    from roomwatch.orchestrator.service import TriageService

    async with TriageService(config) as service:
        if refresh:
            await service.refresh_filter_cache()
        _echo_model(service.get_filter_stats())
