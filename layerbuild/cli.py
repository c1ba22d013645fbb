"""Thin CLI wrapper for layerbuild.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
import logging
import signal
import sys
from pathlib import Path
from types import FrameType
from typing import Annotated, Any

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from layerbuild import __version__
from layerbuild.config import Settings, get_settings, print_settings_json

app = typer.Typer(
    name="layerbuild",
    help="layerbuild - dependency-ordered multi-step Docker image builds",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)

logger = logging.getLogger(__name__)

_STATUS_STYLES = {
    "succeeded": "green",
    "failed": "red",
    "cancelled": "yellow",
    "skipped": "dim",
}


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"layerbuild version {__version__}")
        raise typer.Exit()


def setup_logging(level: str) -> None:
    """Send log records to stderr through rich."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, rich_tracebacks=True)],
        force=True,
    )


def _handle_sigterm(signum: int, frame: FrameType | None) -> None:
    # Unwind so temporary directories and containers are cleaned up
    raise SystemExit(128 + signum)


def install_signal_handlers() -> None:
    signal.signal(signal.SIGTERM, _handle_sigterm)


def parse_pairs(values: list[str] | None, option: str) -> dict[str, str]:
    """Parse repeated KEY=VALUE options.

    Raises:
        typer.BadParameter: On entries without '='.
    """
    pairs: dict[str, str] = {}
    for item in values or []:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"expected KEY=VALUE, got '{item}'", param_hint=option)
        pairs[key] = value
    return pairs


def load_settings(overrides: dict[str, Any]) -> Settings:
    """Create settings, with CLI values taking precedence over the environment."""
    try:
        return Settings(**{k: v for k, v in overrides.items() if v is not None})
    except ValidationError as e:
        err_console.print("[red]Invalid configuration:[/red]")
        err_console.print(str(e))
        raise typer.Exit(code=1) from None


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
    """layerbuild - dependency-ordered multi-step Docker image builds."""


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        console.print(print_settings_json(settings))
        return

    tmp_dir_display = str(settings.tmp_dir) if settings.tmp_dir else "(system default)"
    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Paths:[/bold]")
    console.print(f"  Build file:          {settings.buildfile_path}")
    console.print(f"  Work directory:      {settings.workdir}")
    console.print(f"  Temp directory:      {tmp_dir_display}")
    console.print()
    console.print("[bold]Build:[/bold]")
    console.print(f"  Build id:            {settings.unique_id or '(none)'}")
    console.print(f"  No cache:            {settings.no_cache}")
    console.print(f"  No squash:           {settings.no_squash}")
    console.print(f"  Keep steps:          {settings.keep_steps}")
    console.print(f"  Keep artifacts:      {settings.keep_artifacts}")
    console.print(f"  Max concurrent:      {settings.max_concurrent_steps or '(all)'}")
    console.print(f"  Log level:           {settings.log_level}")
    console.print()
    console.print("[bold]Docker:[/bold]")
    console.print(f"  Host:                {settings.docker_host or '(environment)'}")
    console.print(f"  TLS:                 {settings.use_tls}")
    console.print(f"  Network:             {settings.network or '(default)'}")
    console.print()
    console.print("[bold]Secrets:[/bold]")
    console.print(f"  Providers:           {', '.join(settings.enabled_secret_providers)}")
    console.print(f"  Serve secrets:       {settings.use_secrets}")
    console.print(f"  API binding:         {settings.api_binding}:{settings.api_port}")


@app.command()
def plan(
    buildfile: Annotated[
        Path | None,
        typer.Option("--file", "-f", help="Build file (default: build.yml in workdir)"),
    ] = None,
    workdir: Annotated[
        Path | None,
        typer.Option("--workdir", "-d", help="Work directory"),
    ] = None,
    uid: Annotated[
        str | None,
        typer.Option("--uid", help="Build id appended to image names"),
    ] = None,
    env_vars: Annotated[
        list[str] | None,
        typer.Option("--env", help="Value for _env(NAME) as NAME=VALUE (repeatable)"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show build levels and image names without contacting Docker."""
    from layerbuild.builds.runner import unique_step_name
    from layerbuild.manifest import ManifestError, load_manifest_from_settings

    settings = load_settings(
        {
            "buildfile": buildfile,
            "workdir": workdir,
            "unique_id": uid,
            "env_vars": parse_pairs(env_vars, "--env") or None,
        }
    )
    setup_logging(settings.log_level)

    try:
        manifest = load_manifest_from_settings(settings)
    except ManifestError as e:
        err_console.print(f"[red]Error ({e.code}):[/red] {e}")
        raise typer.Exit(code=1) from None

    levels = [
        [
            {
                "name": step.name,
                "label": step.label,
                "image": unique_step_name(step.name, settings.unique_id),
                "depends_on": list(step.depends_on),
            }
            for step in level
        ]
        for level in manifest.build_levels
    ]

    if json_output:
        console.print(json.dumps({"version": manifest.version, "levels": levels}, indent=2))
        return

    console.print(f"[bold]Build file version {manifest.version}[/bold]")
    for idx, level in enumerate(levels):
        console.print(f"[bold]Level {idx}:[/bold]")
        for entry in level:
            deps = f" (after {', '.join(entry['depends_on'])})" if entry["depends_on"] else ""
            console.print(f"  {entry['label']} -> {entry['image']}{deps}")


@app.command()
def build(
    buildfile: Annotated[
        Path | None,
        typer.Option("--file", "-f", help="Build file (default: build.yml in workdir)"),
    ] = None,
    workdir: Annotated[
        Path | None,
        typer.Option("--workdir", "-d", help="Work directory"),
    ] = None,
    uid: Annotated[
        str | None,
        typer.Option("--uid", help="Build id appended to image and container names"),
    ] = None,
    start_step: Annotated[
        str | None,
        typer.Option("--start-step", "-s", help="Only build this step and its dependents"),
    ] = None,
    no_cache: Annotated[
        bool | None,
        typer.Option("--no-cache", help="Do not use the build cache"),
    ] = None,
    suppress: Annotated[
        bool | None,
        typer.Option("--suppress", help="Suppress build output"),
    ] = None,
    no_squash: Annotated[
        bool | None,
        typer.Option("--no-squash", help="Skip cleanup commands and squashing"),
    ] = None,
    keep_steps: Annotated[
        bool | None,
        typer.Option("--keep-steps", help="Keep all intermediate step images"),
    ] = None,
    keep_artifacts: Annotated[
        bool | None,
        typer.Option("--keep-artifacts", help="Keep artifact directories"),
    ] = None,
    use_stat: Annotated[
        bool | None,
        typer.Option(
            "--use-stat-for-permissions",
            help="Read artifact permissions with stat inside the container",
        ),
    ] = None,
    after_build_commands: Annotated[
        bool | None,
        typer.Option("--after-build-commands", help="Allow after-build commands on the host"),
    ] = None,
    fail_on_command_error: Annotated[
        bool | None,
        typer.Option(
            "--fail-on-command-error",
            help="Fail a step when its command exits non-zero",
        ),
    ] = None,
    build_args: Annotated[
        list[str] | None,
        typer.Option("--build", help="Build argument KEY=VALUE (repeatable)"),
    ] = None,
    env_vars: Annotated[
        list[str] | None,
        typer.Option("--env", help="Value for _env(NAME) as NAME=VALUE (repeatable)"),
    ] = None,
    use_secrets: Annotated[
        bool | None,
        typer.Option("--secrets", help="Serve secrets over HTTP during the build"),
    ] = None,
    secret_providers: Annotated[
        str | None,
        typer.Option("--secret-providers", help="Enabled secret providers (e.g. file,env)"),
    ] = None,
    port: Annotated[
        int | None,
        typer.Option("--port", help="Secret API port"),
    ] = None,
    binding: Annotated[
        str | None,
        typer.Option("--binding", help="Secret API bind address"),
    ] = None,
    network: Annotated[
        str | None,
        typer.Option("--network", help="Network mode for builds"),
    ] = None,
    docker_memory: Annotated[
        str | None,
        typer.Option("--docker-memory", help="Memory limit for builds (e.g. 2g)"),
    ] = None,
    docker_cpu_shares: Annotated[
        int | None,
        typer.Option("--docker-cpu-shares", help="CPU shares for builds"),
    ] = None,
    docker_cpuset_cpus: Annotated[
        str | None,
        typer.Option("--docker-cpuset-cpus", help="CPUs allowed for builds (e.g. 0-3)"),
    ] = None,
    level: Annotated[
        str | None,
        typer.Option("--level", help="Log level (DEBUG, INFO, WARNING, ERROR)"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output the build report as JSON"),
    ] = False,
) -> None:
    """Build every step of the build file."""
    from layerbuild.builds import BuildScheduler, StepBuildError, get_docker_client
    from layerbuild.manifest import ManifestError, load_manifest_from_settings
    from layerbuild.secrets import get_providers

    settings = load_settings(
        {
            "buildfile": buildfile,
            "workdir": workdir,
            "unique_id": uid,
            "start_step": start_step,
            "no_cache": no_cache,
            "suppress_output": suppress,
            "no_squash": no_squash,
            "keep_steps": keep_steps,
            "keep_artifacts": keep_artifacts,
            "use_stat_for_permissions": use_stat,
            "allow_after_build_commands": after_build_commands,
            "fail_on_command_error": fail_on_command_error,
            "build_args": parse_pairs(build_args, "--build") or None,
            "env_vars": parse_pairs(env_vars, "--env") or None,
            "use_secrets": use_secrets,
            "secret_providers": secret_providers,
            "api_port": port,
            "api_binding": binding,
            "network": network,
            "docker_memory": docker_memory,
            "docker_cpu_shares": docker_cpu_shares,
            "docker_cpuset_cpus": docker_cpuset_cpus,
            "log_level": level.upper() if level else None,
        }
    )
    setup_logging(settings.log_level)
    install_signal_handlers()

    providers = get_providers()
    try:
        manifest = load_manifest_from_settings(settings, providers)
        client = get_docker_client(settings)
        extra_args: dict[str, str] = {}
        if settings.use_secrets:
            from web.server import SecretServer

            server = SecretServer(providers, settings)
            extra_args = server.build_args()
            with server:
                report = BuildScheduler(manifest, settings, client, extra_args).run()
        else:
            report = BuildScheduler(manifest, settings, client).run()
    except (ManifestError, StepBuildError) as e:
        err_console.print(f"[red]Error ({e.code}):[/red] {e}")
        raise typer.Exit(code=1) from None
    except RuntimeError as e:
        err_console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1) from None

    if json_output:
        console.print(json.dumps(report.to_dict(), indent=2))
    else:
        table = Table(title=f"Build {report.build_id or ''}".strip())
        table.add_column("Level", justify="right")
        table.add_column("Step")
        table.add_column("Image")
        table.add_column("Status")
        table.add_column("Detail")
        for r in report.results:
            style = _STATUS_STYLES.get(r.status.value, "")
            detail = f"{r.error_code}: {r.error}" if r.error else ""
            table.add_row(
                str(r.level),
                r.label,
                r.image,
                f"[{style}]{r.status.value}[/{style}]" if style else r.status.value,
                detail,
            )
        console.print(table)
        if report.removed_images:
            console.print(f"Removed intermediate images: {', '.join(report.removed_images)}")

    if not report.success:
        raise typer.Exit(code=1)


@app.command("squash")
def squash_cmd(
    source: Annotated[
        Path,
        typer.Argument(help="Image export created by docker save ('-' for stdin)"),
    ],
    output: Annotated[
        Path | None,
        typer.Option("--output", "-o", help="Output file (default: stdout)"),
    ] = None,
    tag: Annotated[
        str | None,
        typer.Option("--tag", "-t", help="Tag the squashed image as repo[:tag]"),
    ] = None,
    from_layer: Annotated[
        str | None,
        typer.Option("--from", help="Layer id to squash from, or 'root'"),
    ] = None,
    tmp_dir: Annotated[
        Path | None,
        typer.Option("--tmp-dir", help="Parent directory for working files"),
    ] = None,
) -> None:
    """Squash the layers of a saved image into one."""
    from layerbuild.squash import SquashError, squash

    settings = get_settings()
    setup_logging(settings.log_level)
    install_signal_handlers()

    input_source: Path | Any = sys.stdin.buffer if str(source) == "-" else source
    try:
        result = squash(
            input_source,
            output,
            tag=tag,
            from_layer=from_layer,
            tmp_dir=tmp_dir or settings.tmp_dir,
        )
    except SquashError as e:
        err_console.print(f"[red]Error ({e.code}):[/red] {e}")
        raise typer.Exit(code=1) from None

    if output is not None:
        console.print(
            f"[green]Squashed {len(result.merged)} layer(s); leaf {result.leaf[:12]}[/green]"
        )


if __name__ == "__main__":
    app()
