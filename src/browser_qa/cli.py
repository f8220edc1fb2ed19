"""Command line interface for browser-qa."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as get_version
from pathlib import Path
from typing import Annotated, Any, Iterator, Optional

import typer

from .agent.learning import summarize_knowledge
from .agent.pipeline import TestRunResult
from .config import AppConfig, load_config
from .errors import AbortedError, BrowserQAError
from .factory import Runtime, build_runtime, build_sink
from .models import CommandMode, ModeResult, ParsedCommand, TestVerdict
from .notifications.base import OutputSink
from .orchestrator.control import CancellationToken
from .parser import help_text, parse_command, parse_management_command

LOGGER = logging.getLogger(__name__)

app = typer.Typer(help="AI-driven browser QA agent")

ConfigOption = Annotated[
    Optional[Path],
    typer.Option("--config", "-c", help="Path to YAML configuration."),
]
EnvFileOption = Annotated[
    Optional[Path],
    typer.Option("--env-file", help="Path to an .env file with default configuration values."),
]
ProviderOption = Annotated[
    Optional[str],
    typer.Option("--llm-provider", help="LLM provider to use (openai or mock)."),
]
ModelOption = Annotated[
    Optional[str],
    typer.Option("--model", help="Model driving browser agent tasks."),
]
ApiKeyOption = Annotated[
    Optional[str],
    typer.Option("--api-key", help="API key for the LLM provider."),
]
HeadlessOption = Annotated[
    Optional[bool],
    typer.Option("--headless/--headed", help="Run browsers headless (or headed)."),
]
UrlOption = Annotated[
    Optional[str],
    typer.Option("--url", help="URL opened by newly spawned browsers."),
]
DataDirOption = Annotated[
    Optional[Path],
    typer.Option("--data-dir", help="Directory for profiles, screenshots and history."),
]


@app.callback()
def main(
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
) -> None:
    """Configure logging before executing any command."""

    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


@app.command()
def version() -> None:
    """Print the package version."""

    try:
        typer.echo(get_version("browser-qa"))
    except PackageNotFoundError:  # pragma: no cover - when running from source tree
        typer.echo("0.0.0")


@app.command()
def shell(
    config_path: ConfigOption = None,
    env_file: EnvFileOption = None,
    llm_provider: ProviderOption = None,
    model: ModelOption = None,
    api_key: ApiKeyOption = None,
    headless: HeadlessOption = None,
    url: UrlOption = None,
    data_dir: DataDirOption = None,
) -> None:
    """Start an interactive session. Ctrl+C cancels the running command."""

    config = _load(config_path, env_file, llm_provider, model, api_key, headless, url, data_dir)
    asyncio.run(_shell(config))


@app.command()
def run(
    command: Annotated[str, typer.Argument(help="Command to run, e.g. 'e: get the page title'.")],
    config_path: ConfigOption = None,
    env_file: EnvFileOption = None,
    llm_provider: ProviderOption = None,
    model: ModelOption = None,
    api_key: ApiKeyOption = None,
    headless: HeadlessOption = None,
    url: UrlOption = None,
    data_dir: DataDirOption = None,
) -> None:
    """Run a single command and exit."""

    config = _load(config_path, env_file, llm_provider, model, api_key, headless, url, data_dir)
    result = asyncio.run(_run_once(config, parse_command(command)))
    if not result.success:
        raise typer.Exit(code=1)


@app.command()
def test(
    description: Annotated[str, typer.Argument(help="Ticket text or a JSON test plan.")],
    config_path: ConfigOption = None,
    env_file: EnvFileOption = None,
    llm_provider: ProviderOption = None,
    model: ModelOption = None,
    api_key: ApiKeyOption = None,
    headless: HeadlessOption = None,
    url: UrlOption = None,
    data_dir: DataDirOption = None,
) -> None:
    """Run a QA test; exits with code 1 unless the verdict is pass."""

    config = _load(config_path, env_file, llm_provider, model, api_key, headless, url, data_dir)
    command = ParsedCommand(
        mode=CommandMode.TEST, instruction=description, raw=f"test: {description}"
    )
    result = asyncio.run(_run_once(config, command))
    if not isinstance(result, TestRunResult) or result.report.verdict != TestVerdict.PASS:
        raise typer.Exit(code=1)
    typer.echo(f"Report: {result.report_id}")


def _load(
    config_path: Optional[Path],
    env_file: Optional[Path],
    llm_provider: Optional[str],
    model: Optional[str],
    api_key: Optional[str],
    headless: Optional[bool],
    url: Optional[str],
    data_dir: Optional[Path],
) -> AppConfig:
    overrides: dict[str, Any] = {}
    if any([llm_provider, model, api_key]):
        overrides.setdefault("llm", {})
        if llm_provider:
            overrides["llm"]["provider"] = llm_provider
        if model:
            overrides["llm"]["model"] = model
        if api_key:
            overrides["llm"]["api_key"] = api_key
    if headless is not None:
        overrides["browser"] = {"headless": headless}
    if url:
        overrides["target_url"] = url
    if data_dir is not None:
        overrides["data_dir"] = str(data_dir)
    return load_config(config_path, env_file=env_file, **overrides)


async def _run_once(config: AppConfig, command: ParsedCommand) -> ModeResult:
    runtime = build_runtime(config, build_sink(config.notifications))
    try:
        await runtime.start()
        token = CancellationToken()
        with _cancel_on_interrupt(token):
            return await runtime.orchestrator.execute(command, runtime.sink, token)
    except AbortedError as exc:
        runtime.sink.warn(f"Command aborted: {exc}")
        return ModeResult(message=str(exc), success=False)
    except BrowserQAError as exc:
        runtime.sink.error(str(exc))
        return ModeResult(message=str(exc), success=False)
    finally:
        await runtime.aclose()


async def _shell(config: AppConfig) -> None:
    runtime = build_runtime(config, build_sink(config.notifications))
    sink = runtime.sink
    try:
        await runtime.start()
        sink.info('browser-qa ready. Type "help" for commands.')
        while True:
            try:
                line = await asyncio.to_thread(input, "qa> ")
            except (EOFError, KeyboardInterrupt):
                break
            line = line.strip()
            if not line:
                continue
            if line.lower() in {"quit", "exit"}:
                break
            await _handle_line(runtime, line, sink)
    except BrowserQAError as exc:
        sink.error(str(exc))
        raise typer.Exit(code=1) from exc
    finally:
        sink.info("Closing browsers...")
        await runtime.aclose()


async def _handle_line(runtime: Runtime, line: str, sink: OutputSink) -> None:
    lower = line.lower()
    if lower == "help":
        sink.log(help_text())
        return
    if lower == "cost":
        session = runtime.cost_tracker.session_total()
        billing = runtime.cost_tracker.billing_cycle_total()
        sink.log(
            f"Session: ${session.cost_usd:.4f} "
            f"({session.input_tokens:,} in / {session.output_tokens:,} out)"
        )
        sink.log(f"Billing cycle: ${billing.cost_usd:.4f}")
        return
    if lower == "history":
        tasks = await runtime.store.get_recent_tasks(10)
        if not tasks:
            sink.log("No tasks yet.")
        for record in tasks:
            sink.log(
                f"  [{record.outcome.upper()}] {record.mode}: {record.instruction[:60]} "
                f"(${record.cost_usd:.4f})"
            )
        return
    if lower == "knowledge":
        try:
            domain = runtime.pool.active().domain
        except BrowserQAError as exc:
            sink.error(f"Command failed: {exc}")
            return
        knowledge = await runtime.store.get_knowledge(domain)
        if knowledge is None:
            sink.log(f"Nothing learned about {domain} yet.")
        else:
            sink.log(summarize_knowledge(knowledge))
        return

    management = parse_management_command(line)
    if management is not None:
        await runtime.orchestrator.manage(management, sink)
        return

    token = CancellationToken()
    try:
        with _cancel_on_interrupt(token):
            await runtime.orchestrator.execute(parse_command(line), sink, token)
    except AbortedError:
        sink.warn("Command aborted.")
    except BrowserQAError as exc:
        sink.error(f"Command failed: {exc}")


@contextlib.contextmanager
def _cancel_on_interrupt(token: CancellationToken) -> Iterator[CancellationToken]:
    """Map SIGINT to ``token.cancel()`` while a command runs."""

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, token.cancel)
    except (NotImplementedError, RuntimeError, ValueError):
        LOGGER.debug("SIGINT handler unavailable; Ctrl+C will not cancel commands")
        yield token
        return
    try:
        yield token
    finally:
        loop.remove_signal_handler(signal.SIGINT)


if __name__ == "__main__":
    app()
