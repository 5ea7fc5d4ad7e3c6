"""CLI for LocalModel - prompt locally installed models."""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Any, Awaitable, Callable

import click

from localmodel.config import CONFIG_PATH_ENV, load_settings
from localmodel.errors import EngineMissingError, LocalModelError
from localmodel.manager import SessionManager

EXIT_COMMANDS = {"/exit", "/quit"}


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def _run(ctx: click.Context, body: Callable[[SessionManager], Awaitable[Any]]) -> Any:
    """Run an async command body against a fresh manager, then shut it down."""

    async def runner() -> Any:
        manager = SessionManager(ctx.obj["settings"])
        try:
            return await body(manager)
        finally:
            await manager.shutdown()

    try:
        return asyncio.run(runner())
    except EngineMissingError as e:
        raise click.ClickException(f"Engine not installed.\n{e.guidance}") from e
    except LocalModelError as e:
        raise click.ClickException(str(e)) from e


@click.group()
@click.version_option(version="0.1.0", prog_name="localmodel")
@click.option(
    "--config", "-c",
    "config_path",
    default=None,
    type=click.Path(dir_okay=False),
    help="Config file (defaults to ~/.localmodel/config.json)",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, verbose: bool) -> None:
    """LocalModel - Prompt local models through a persistent session.

    Keeps one model process warm, caches recent answers and falls back
    to one-shot invocations when the session misbehaves.
    """
    settings = load_settings(config_path)
    configure_logging("DEBUG" if verbose else settings.log_level)
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings
    ctx.obj["config_path"] = config_path


@main.command()
@click.pass_context
def init(ctx: click.Context) -> None:
    """Check the engine and make the default model available.

    \b
    Example:
        localmodel init
    """
    async def body(manager: SessionManager) -> None:
        model = await manager.initialize()
        click.echo(f"Engine: {manager.provisioner.engine_version}")
        click.echo(f"\n✓ Ready with model '{model}'")

    _run(ctx, body)


@main.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show engine version, server reachability and installed models."""

    async def body(manager: SessionManager) -> None:
        version = await manager.provisioner.check_engine()
        click.echo(f"Engine:  {version}")

        reachable = await manager.engine_healthy()
        click.echo(f"Server:  {manager.settings.base_url} ({'running' if reachable else 'not running'})")
        click.echo(f"Default: {manager.default_model}")

        if reachable:
            models = await manager.list_models()
            click.echo(f"Models:  {len(models)} installed")

    _run(ctx, body)


@main.command()
@click.option("--refresh", is_flag=True, help="Bypass the cached listing")
@click.pass_context
def models(ctx: click.Context, refresh: bool) -> None:
    """List installed models."""

    async def body(manager: SessionManager) -> None:
        installed = await manager.list_models(force_refresh=refresh)
        if not installed:
            click.echo("No models found. Run 'localmodel pull <name>' to download one.")
            return

        click.echo("Installed models:")
        for model in sorted(installed, key=lambda m: m.name):
            marker = "*" if model.name == manager.default_model else " "
            size = f" ({model.size_label})" if model.size_label else ""
            click.echo(f"  {marker} {model.name}{size}")

    _run(ctx, body)


@main.command()
@click.argument("name")
@click.pass_context
def pull(ctx: click.Context, name: str) -> None:
    """Download a model.

    \b
    Example:
        localmodel pull phi3:mini
    """

    async def body(manager: SessionManager) -> None:
        click.echo(f"Downloading {name}...")
        with click.progressbar(length=100, label=name) as bar:
            last = 0

            def on_progress(percent: float) -> None:
                nonlocal last
                step = int(percent) - last
                if step > 0:
                    bar.update(step)
                    last += step

            await manager.download_model(name, on_progress)
            on_progress(100.0)
        click.echo(f"✓ Model '{name}' downloaded")

    _run(ctx, body)


@main.command()
@click.argument("prompt")
@click.option("--model", "-m", default=None, help="Model to use (defaults to the configured default)")
@click.option(
    "--context-file",
    default=None,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="File whose contents are prepended to the prompt",
)
@click.option("--show-meta", is_flag=True, help="Print model, channel and duration after the answer")
@click.pass_context
def ask(ctx: click.Context, prompt: str, model: str | None, context_file: Path | None, show_meta: bool) -> None:
    """Ask a single question.

    \b
    Example:
        localmodel ask "what is a monad?"
        localmodel ask "summarize this" --context-file notes.md
    """
    context = context_file.read_text() if context_file else None

    async def body(manager: SessionManager) -> None:
        result = await manager.generate(model, prompt, context)
        click.echo(result.text)
        if show_meta:
            click.echo(f"\n[{result.model} via {result.channel.value} in {result.duration_ms}ms]")

    _run(ctx, body)


@main.command()
@click.option("--model", "-m", default=None, help="Model to use (defaults to the configured default)")
@click.pass_context
def chat(ctx: click.Context, model: str | None) -> None:
    """Interactive chat reusing one warm model session.

    Type /exit to quit or /clear to drop cached answers.
    """

    async def body(manager: SessionManager) -> None:
        default = await manager.initialize()
        click.echo(f"Chatting with {model or default}. Type /exit to quit.")

        while True:
            line = await asyncio.to_thread(click.prompt, ">", prompt_suffix=" ", default="", show_default=False)
            line = line.strip()
            if not line:
                continue
            if line in EXIT_COMMANDS:
                break
            if line == "/clear":
                manager.cache.clear()
                click.echo("Cache cleared.")
                continue

            try:
                result = await manager.generate(model, line)
            except EngineMissingError:
                raise
            except LocalModelError as e:
                click.echo(f"Error: {e}", err=True)
                continue
            click.echo(result.text)

    _run(ctx, body)


@main.command()
@click.option("--port", default=8000, help="Port to run the broker on")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--reload", is_flag=True, help="Enable auto-reload for development")
@click.pass_context
def serve(ctx: click.Context, port: int, host: str, reload: bool) -> None:
    """Start the LocalModel HTTP broker server."""
    import uvicorn

    # The broker loads its own settings, possibly in a reloader subprocess
    if ctx.obj["config_path"]:
        os.environ[CONFIG_PATH_ENV] = str(Path(ctx.obj["config_path"]).resolve())

    click.echo(f"Starting LocalModel broker on {host}:{port}")
    uvicorn.run(
        "localmodel.broker:app",
        host=host,
        port=port,
        reload=reload,
    )


if __name__ == "__main__":
    main()
