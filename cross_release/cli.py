"""Thin CLI wrapper for cross_release.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
import os
from pathlib import Path
from typing import Annotated

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape

from cross_release import __version__
from cross_release.config import Settings, get_settings, print_settings_json
from cross_release.types import EventKind, HostClass, ToolchainChannel

app = typer.Typer(
    name="cross-release",
    help="Cross-release - build every target, package, and publish tagged releases",
    no_args_is_help=True,
)
console = Console()


def print_json_text(text: str) -> None:
    """Print JSON without markup parsing or line wrapping."""
    console.print(text, markup=False, highlight=False, soft_wrap=True)


def load_settings() -> Settings:
    """Load settings, exiting with code 1 on invalid configuration."""
    try:
        return get_settings()
    except ValidationError as e:
        console.print(f"[red]Invalid configuration: {escape(str(e))}[/red]")
        raise typer.Exit(code=1) from None


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"cross-release version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """Cross-release - build every target, package, and publish tagged releases."""


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = load_settings()
    if json_output:
        print_json_text(print_settings_json(settings))
    else:
        host_display = settings.host_class.value if settings.host_class else "(detected)"
        parallel_display = settings.max_parallel_legs or "(all legs)"
        console.print("[bold]Effective Configuration:[/bold]")
        console.print()
        console.print("[bold]Paths:[/bold]")
        console.print(f"  Cache store:         {settings.cache_dir}")
        console.print(f"  Work directory:      {settings.work_dir}")
        console.print(f"  Dist directory:      {settings.dist_dir}")
        console.print(f"  Database URL:        {settings.db_url}")
        console.print()
        console.print("[bold]Operational:[/bold]")
        console.print(f"  Log level:           {settings.log_level}")
        console.print(f"  Host class:          {host_display}")
        console.print(f"  Tracked refs:        {', '.join(settings.tracked_refs) or '(all)'}")
        console.print(f"  Max parallel legs:   {parallel_display}")
        console.print()
        console.print("[bold]Toolchain:[/bold]")
        console.print(f"  Linux toolchain:     {settings.linux_toolchain}")
        console.print(f"  Darwin toolchain:    {settings.darwin_toolchain}")
        console.print(f"  Lockfile:            {settings.lockfile_name}")
        console.print(f"  Archive extension:   {settings.archive_extension}")
        console.print()
        console.print("[bold]Release host:[/bold]")
        console.print(f"  Repository:          {settings.release_repo or '(not set)'}")
        console.print(f"  API URL:             {settings.release_api_url}")
        console.print(
            f"  Token:               {'(set)' if settings.release_token else '(not set)'}"
        )
        console.print()
        console.print("[bold]Timeouts (seconds):[/bold]")
        console.print(f"  Build timeout:       {settings.build_timeout}")
        console.print(f"  Upload timeout:      {settings.upload_timeout}")


targets_app = typer.Typer(help="Inspect the target matrix")
app.add_typer(targets_app, name="targets")


@targets_app.command("list")
def targets_list(
    host: Annotated[
        HostClass | None,
        typer.Option("--host", help="Only legs runnable on this host class"),
    ] = None,
    channel: Annotated[
        ToolchainChannel | None,
        typer.Option("--channel", "-c", help="Only legs for this channel"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List matrix legs."""
    from cross_release.targets import all_targets

    specs = [
        s
        for s in all_targets()
        if (host is None or s.host_class is host)
        and (channel is None or s.channel is channel)
    ]

    if json_output:
        output = [
            {**s.model_dump(mode="json"), "leg_id": s.leg_id, "publish_eligible": s.publish_eligible}
            for s in specs
        ]
        print_json_text(json.dumps(output, indent=2))
        return

    console.print(f"[bold]Found {len(specs)} leg(s):[/bold]")
    console.print()
    for s in specs:
        role = "[green]release[/green]" if s.publish_eligible else "[blue]conformance[/blue]"
        console.print(
            f"  {s.leg_id:<40} {s.host_class.value:<7} {s.channel.value:<8} {role}"
        )


@app.command()
def gate(
    event: Annotated[
        EventKind,
        typer.Option("--event", "-e", help="Triggering event kind"),
    ],
    channel: Annotated[
        ToolchainChannel,
        typer.Option("--channel", "-c", help="Toolchain channel under test"),
    ] = ToolchainChannel.STABLE,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show whether a run may publish."""
    from cross_release.context import RunContext
    from cross_release.release.gate import may_publish

    ctx = RunContext(event_kind=event, ref="gate-check", channel=channel, crate_name="gate-check")
    allowed = may_publish(ctx)

    if json_output:
        print_json_text(
            json.dumps(
                {"event_kind": event.value, "channel": channel.value, "publish": allowed}
            )
        )
    elif allowed:
        console.print("[green]Publishing allowed[/green]")
    else:
        console.print("[yellow]Publishing denied[/yellow]")


@app.command()
def name(
    crate: Annotated[str, typer.Argument(help="Crate name")],
    version_tag: Annotated[str, typer.Argument(help="Version tag")],
    triple: Annotated[str, typer.Argument(help="Target triple")],
    extension: Annotated[
        str | None,
        typer.Option("--ext", help="Archive extension (default from settings)"),
    ] = None,
) -> None:
    """Print the release file name for a leg."""
    from cross_release.builds.packager import artifact_file_name

    ext = extension or load_settings().archive_extension
    console.print(artifact_file_name(crate, version_tag, triple, ext), highlight=False)


@app.command()
def run(
    crate: Annotated[
        str | None,
        typer.Option("--crate", help="Crate name (default: CRATE_NAME)"),
    ] = None,
    event: Annotated[
        EventKind | None,
        typer.Option("--event", "-e", help="Event kind (default: from CI environment)"),
    ] = None,
    ref: Annotated[
        str | None,
        typer.Option("--ref", "-r", help="Branch or tag (default: from CI environment)"),
    ] = None,
    channel: Annotated[
        ToolchainChannel | None,
        typer.Option("--channel", "-c", help="Toolchain channel under test"),
    ] = None,
    project_dir: Annotated[
        Path,
        typer.Option("--project-dir", "-p", help="Source project root"),
    ] = Path("."),
    host: Annotated[
        HostClass | None,
        typer.Option("--host", help="Override host class detection"),
    ] = None,
    no_cache: Annotated[
        bool,
        typer.Option("--no-cache", help="Do not restore or persist dependency caches"),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Build, package and (for stable tag pushes) publish every leg.

    Event details are read from the CI environment (Travis CI or GitHub
    Actions) unless both --event and --ref are given. Exits with code 1 when any
    leg fails to build or package; upload failures are reported only.
    """
    from cross_release.builds.cache import CacheManager
    from cross_release.builds.packager import PackagingError
    from cross_release.context import ContextError, RunContext, context_from_env
    from cross_release.db import create_all_tables, get_engine, get_session_factory
    from cross_release.logging_utils import setup_logging
    from cross_release.orchestrator import RunOrchestrator
    from cross_release.release.host import GitHubReleaseHost
    from cross_release.targets import RegistryError

    if (event is None) != (ref is None):
        raise typer.BadParameter("--event and --ref must be given together")

    settings = load_settings()
    setup_logging(settings.log_level)

    try:
        if event is not None and ref is not None:
            ctx = RunContext(
                event_kind=event,
                ref=ref,
                channel=channel or ToolchainChannel.STABLE,
                crate_name=crate or os.environ.get("CRATE_NAME", ""),
            )
        else:
            ctx = context_from_env(os.environ, crate_name=crate, channel=channel)
    except ContextError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(code=1) from None
    except ValueError as e:
        console.print(f"[red]Invalid run context: {e}[/red]")
        raise typer.Exit(code=1) from None

    cache: CacheManager | None = None
    if not no_cache:
        engine = get_engine(settings.db_url)
        create_all_tables(engine)
        cache = CacheManager(settings.cache_dir, get_session_factory(engine))

    release_host: GitHubReleaseHost | None = None
    if settings.release_repo:
        release_host = GitHubReleaseHost(
            settings.release_repo,
            api_url=settings.release_api_url,
            upload_url=settings.release_upload_url,
            upload_timeout=settings.upload_timeout,
        )

    try:
        orchestrator = RunOrchestrator(
            project_dir=project_dir.resolve(),
            settings=settings,
            host_class=host,
            cache=cache,
            release_host=release_host,
        )
        report = orchestrator.run(ctx)
    except (PackagingError, RegistryError) as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(code=1) from None
    finally:
        if release_host is not None:
            release_host.close()

    if json_output:
        print_json_text(report.model_dump_json(indent=2))
    else:
        status_color = "green" if report.status.value == "success" else "red"
        console.print()
        console.print("[bold]Run Results:[/bold]")
        console.print(f"  Event:    {report.event_kind} {report.ref}")
        console.print(f"  Channel:  {report.channel}")
        console.print(f"  Publish:  {'allowed' if report.publish_allowed else 'denied'}")
        if report.skipped:
            console.print("  [yellow]Ref is not tracked, nothing built[/yellow]")
        console.print(f"  Status:   [{status_color}]{report.status.value}[/{status_color}]")

        if report.legs:
            console.print()
            console.print("[bold]Per-Leg Results:[/bold]")
        for leg in report.legs:
            if leg.failed:
                console.print(f"  [red]✗ {leg.leg_id}[/red]")
                console.print(f"      Error: {leg.packaging_error or leg.build_error_message}")
                if leg.log_path:
                    console.print(f"      Log: {leg.log_path}")
                continue

            hit_marker = " (cache hit)" if leg.cache_hit else ""
            console.print(f"  [green]✓ {leg.leg_id}{hit_marker}[/green]")
            if leg.artifact:
                console.print(f"      {leg.artifact}")
            if leg.publish_status.value == "succeeded":
                dup = " (already present)" if leg.publish_duplicate else ""
                console.print(f"      Published{dup}")
            elif leg.publish_status.value == "failed":
                console.print(f"      [yellow]Upload failed: {leg.publish_error}[/yellow]")

    if report.status.value == "failure":
        raise typer.Exit(code=1)


cache_app = typer.Typer(help="Inspect the dependency cache")
app.add_typer(cache_app, name="cache")


@cache_app.command("list")
def cache_list(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List persisted dependency caches."""
    from cross_release.builds.cache import CacheManager
    from cross_release.db import create_all_tables, get_engine, get_session_factory

    settings = load_settings()
    engine = get_engine(settings.db_url)
    create_all_tables(engine)
    manager = CacheManager(settings.cache_dir, get_session_factory(engine))
    entries = manager.list_entries()

    if not entries:
        if json_output:
            print_json_text("[]")
        else:
            console.print("[yellow]No cache entries found[/yellow]")
        return

    if json_output:
        output = [
            {
                "channel": e.channel,
                "lockfile_hash": e.lockfile_hash,
                "storage_location": e.storage_location,
                "permissions": e.permissions,
                "created_at": e.created_at.isoformat() if e.created_at else None,
                "updated_at": e.updated_at.isoformat() if e.updated_at else None,
                "persist_count": e.persist_count,
            }
            for e in entries
        ]
        print_json_text(json.dumps(output, indent=2))
    else:
        console.print(f"[bold]Found {len(entries)} cache entr{'y' if len(entries) == 1 else 'ies'}:[/bold]")
        console.print()
        for e in entries:
            console.print(f"  [green]{e.channel}[/green] {e.lockfile_hash[:23]}...")
            console.print(f"    Location: {e.storage_location}")
            console.print(f"    Permissions: {e.permissions}")
            console.print(f"    Writes: {e.persist_count}")
            console.print()


if __name__ == "__main__":
    app()
