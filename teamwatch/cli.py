"""teamwatch CLI entry point using Click.

Commands:
    teamwatch start [--port N] [--teams-root P] [--tasks-root P]  run the server in the foreground
    teamwatch sessions                                          print the session history index
    teamwatch session <id>                                      print one session as JSON
    teamwatch config show                                       print effective settings
    teamwatch config set <key> <value>                          persist a setting
"""

import json
from dataclasses import replace
from pathlib import Path

import click

from teamwatch.config import VALID_KEYS, load_settings, set_value
from teamwatch.paths import db_path, home as _home


def _get_home(ctx: click.Context) -> Path:
    """Resolve teamwatch home from context or default."""
    return _home(ctx.obj.get("home_override") if ctx.obj else None)


@click.group()
@click.option(
    "--home", "home_override", type=click.Path(path_type=Path), default=None,
    envvar="TEAMWATCH_HOME",
    help="Override teamwatch home directory (default: ~/.teamwatch).",
)
@click.pass_context
def main(ctx: click.Context, home_override: Path | None) -> None:
    """teamwatch: live observer and history for agent teams."""
    ctx.ensure_object(dict)
    ctx.obj["home_override"] = home_override


# ──────────────────────────────────────────────────────────────
# teamwatch start
# ──────────────────────────────────────────────────────────────

@main.command()
@click.option("--port", type=int, default=None, help="Port for the web server (default from config, 3549).")
@click.option("--host", default="127.0.0.1", show_default=True, help="Interface to bind.")
@click.option("--teams-root", type=click.Path(path_type=Path), default=None, help="Teams directory to watch.")
@click.option("--tasks-root", type=click.Path(path_type=Path), default=None, help="Tasks directory to watch.")
@click.pass_context
def start(
    ctx: click.Context,
    port: int | None,
    host: str,
    teams_root: Path | None,
    tasks_root: Path | None,
) -> None:
    """Watch the agent team directories and serve observers (foreground)."""
    import uvicorn

    from teamwatch.web import create_app

    tw_home = _get_home(ctx)
    settings = load_settings(tw_home)
    if teams_root is not None:
        settings = replace(settings, teams_root=teams_root.expanduser())
    if tasks_root is not None:
        settings = replace(settings, tasks_root=tasks_root.expanduser())

    app = create_app(tw_home, settings=settings)
    click.echo(f"teamwatch serving on http://{host}:{port or settings.port}")
    uvicorn.run(app, host=host, port=port or settings.port, log_config=None)


# ──────────────────────────────────────────────────────────────
# teamwatch sessions / session
# ──────────────────────────────────────────────────────────────

def _store(ctx: click.Context):
    from teamwatch.store import SessionStore

    return SessionStore(db_path(_get_home(ctx)))


@main.command()
@click.pass_context
def sessions(ctx: click.Context) -> None:
    """Print the session history index, newest first."""
    rows = _store(ctx).list_sessions()
    if not rows:
        click.echo("No sessions recorded.")
        return
    for row in rows:
        ended = row["ended_at"] or "running"
        click.echo(
            f"{row['id']:>5}  {row['team_name']:<24} {row['started_at']}  "
            f"{ended:<27} members={row['member_count']} messages={row['message_count']} "
            f"tasks={row['task_count']}"
        )


@main.command()
@click.argument("session_id", type=int)
@click.pass_context
def session(ctx: click.Context, session_id: int) -> None:
    """Print one session (config, members, messages, tasks) as JSON."""
    detail = _store(ctx).get_session(session_id)
    if detail is None:
        raise click.ClickException(f"Session {session_id} not found")
    click.echo(json.dumps(detail, indent=2))


# ──────────────────────────────────────────────────────────────
# teamwatch config
# ──────────────────────────────────────────────────────────────

@main.group()
def config() -> None:
    """Show or change settings in config.yaml."""


@config.command("show")
@click.pass_context
def config_show(ctx: click.Context) -> None:
    settings = load_settings(_get_home(ctx))
    for key in VALID_KEYS:
        click.echo(f"{key}: {getattr(settings, key)}")


@config.command("set")
@click.argument("key", type=click.Choice(VALID_KEYS))
@click.argument("value")
@click.pass_context
def config_set(ctx: click.Context, key: str, value: str) -> None:
    try:
        set_value(_get_home(ctx), key, value)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="value") from e
    click.echo(f"{key} = {value}")


if __name__ == "__main__":
    main()
