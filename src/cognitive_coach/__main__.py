"""CLI entry point for CognitiveCoach."""

from __future__ import annotations

import asyncio
import json
import sys
from dataclasses import asdict
from pathlib import Path

import click

from cognitive_coach import __version__
from cognitive_coach.cache.ai_cache import AIResponseCache
from cognitive_coach.config import STAGES, Config, ConfigError, load_config
from cognitive_coach.engine.context_manager import (
    ChatMessage,
    CompactionOptions,
    ContextManager,
)
from cognitive_coach.engine.quality_gates import QualityGateContext, run_quality_gates
from cognitive_coach.engine.token_budget import TokenBudgetManager
from cognitive_coach.exceptions import GenerationFailedError, QualityGateError
from cognitive_coach.models.gemini_provider import GeminiProvider
from cognitive_coach.pipeline import StageRunner
from cognitive_coach.runtime import configure_logging, get_services, reset_services
from cognitive_coach.utils.tokens import estimate_tokens


def _read_json(path: Path) -> object:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        click.echo(f"Invalid JSON in {path}: {e}", err=True)
        sys.exit(1)


def _load_messages(path: Path) -> list[ChatMessage]:
    raw = _read_json(path)
    if isinstance(raw, dict):
        raw = raw.get("messages", [])
    if not isinstance(raw, list):
        click.echo(f"Expected a list of messages in {path}", err=True)
        sys.exit(1)
    try:
        return [ChatMessage.from_dict(item, index) for index, item in enumerate(raw)]
    except (AttributeError, ValueError) as e:
        click.echo(f"Invalid message in {path}: {e}", err=True)
        sys.exit(1)


def _gate_context(raw: object) -> QualityGateContext | None:
    if not isinstance(raw, dict):
        return None
    return QualityGateContext(
        framework=raw.get("framework"),
        nodes=raw.get("nodes"),
        strategy_metrics=raw.get("strategyMetrics"),
    )


@click.group()
@click.version_option(version=__version__, prog_name="cognitive-coach")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, path_type=Path),
    default=None,
    help="Path to coach.toml configuration file.",
)
@click.option("--log-level", default=None, help="Override the configured log level.")
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None, log_level: str | None) -> None:
    """CognitiveCoach: context, retry, cache and quality tooling for LLM coaching."""
    ctx.ensure_object(dict)
    try:
        config = load_config(config_path)
    except ConfigError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)
    configure_logging(log_level or config.logging.level)
    ctx.obj["config"] = config
    ctx.obj["config_path"] = config_path


@cli.command()
@click.argument("text", required=False)
@click.option(
    "--file", "file_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Read the text from a file instead.",
)
@click.pass_context
def estimate(ctx: click.Context, text: str | None, file_path: Path | None) -> None:
    """Estimate the token count of TEXT."""
    config: Config = ctx.obj["config"]
    if file_path is not None:
        text = file_path.read_text(encoding="utf-8")
    if text is None:
        click.echo("Provide TEXT or --file.", err=True)
        sys.exit(1)
    click.echo(str(estimate_tokens(
        text,
        cjk_chars_per_token=config.context.cjk_chars_per_token,
        other_chars_per_token=config.context.other_chars_per_token,
    )))


@cli.command()
@click.argument("messages_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--max-tokens", type=int, default=None, help="Compact above this many tokens.")
@click.option("--recent-turns", type=int, default=None, help="Turns kept verbatim.")
@click.option("--smart", is_flag=True, help="Pick recent turns from the history size.")
@click.pass_context
def compact(
    ctx: click.Context,
    messages_file: Path,
    max_tokens: int | None,
    recent_turns: int | None,
    smart: bool,
) -> None:
    """Compact a JSON conversation and print the result.

    Summaries are model-written when an API key is configured, otherwise
    the deterministic fallback summary is used.
    """
    config: Config = ctx.obj["config"]
    messages = _load_messages(messages_file)
    result = asyncio.run(_compact(config, messages, max_tokens, recent_turns, smart))
    payload = asdict(result)
    payload["compacted_messages"] = [m.to_dict() for m in result.compacted_messages]
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


async def _compact(
    config: Config,
    messages: list[ChatMessage],
    max_tokens: int | None,
    recent_turns: int | None,
    smart: bool,
):
    provider = GeminiProvider(config.model) if config.model.resolved_api_key() else None
    manager = ContextManager(provider, config=config.context)
    try:
        if smart:
            return await manager.smart_compact(messages, max_tokens)
        return await manager.compact_history(
            messages,
            CompactionOptions(max_tokens=max_tokens, recent_turns_to_keep=recent_turns),
        )
    finally:
        if provider is not None:
            await provider.close()


@cli.command()
@click.argument("stage", type=click.Choice(STAGES, case_sensitive=False))
@click.argument("output_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--context", "context_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="JSON with earlier-stage artifacts: framework, nodes, strategyMetrics.",
)
def gate(stage: str, output_file: Path, context_file: Path | None) -> None:
    """Run the quality gates for STAGE on a JSON artifact."""
    output = _read_json(output_file)
    context = _gate_context(_read_json(context_file)) if context_file else None
    result = run_quality_gates(stage, output, context)
    for issue in result.issues:
        click.echo(f"[{issue.severity}] {issue.area} {issue.target_path}: {issue.hint}")
    if result.passed:
        click.echo(f"{stage.upper()} passed ({len(result.warnings)} warning(s))")
        return
    click.echo(f"{stage.upper()} blocked ({len(result.blockers)} blocker(s))", err=True)
    sys.exit(1)


@cli.command()
@click.argument("stage")
@click.option("--system-tokens", type=int, default=0, help="System prompt tokens.")
@click.option("--examples-tokens", type=int, default=0, help="Few-shot example tokens.")
@click.option("--output-tokens", type=int, default=0, help="Expected output tokens.")
@click.option(
    "--context", "context_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Conversation context as plain text.",
)
@click.option("--input", "user_input", default="", help="The user's next message.")
def budget(
    stage: str,
    system_tokens: int,
    examples_tokens: int,
    output_tokens: int,
    context_file: Path | None,
    user_input: str,
) -> None:
    """Show the token budget decision for STAGE (stage0, stage1, stage2)."""
    manager = TokenBudgetManager()
    if stage not in manager.stages:
        click.echo(
            f"Unknown budget stage: {stage} (expected one of {', '.join(manager.stages)})",
            err=True,
        )
        sys.exit(1)
    estimate = manager.estimate_turn(
        system_prompt_tokens=system_tokens,
        context_text=context_file.read_text(encoding="utf-8") if context_file else "",
        examples_tokens=examples_tokens,
        user_input_text=user_input,
        estimated_output_tokens=output_tokens,
    )
    can_proceed, strategy, status = manager.check_budget(stage, "default", estimate)
    click.echo(json.dumps({
        "stage": stage,
        "canProceed": can_proceed,
        "estimate": {"total": estimate.total, **asdict(estimate.breakdown)},
        "budget": asdict(status),
        "strategy": asdict(strategy),
    }, indent=2))


@cli.command("cache-health")
@click.pass_context
def cache_health(ctx: click.Context) -> None:
    """Print the health report of freshly configured stage caches."""
    config: Config = ctx.obj["config"]
    cache = AIResponseCache(config.cache)
    try:
        health = cache.get_global_health_status()
        click.echo(json.dumps(asdict(health), indent=2, default=str))
    finally:
        cache.destroy()


@cli.command()
@click.argument("stage", type=click.Choice(STAGES, case_sensitive=False))
@click.argument("prompt_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--messages", "messages_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="JSON conversation appended after compaction.",
)
@click.option(
    "--context", "context_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="JSON with earlier-stage artifacts for the quality gates.",
)
@click.pass_context
def generate(
    ctx: click.Context,
    stage: str,
    prompt_file: Path,
    messages_file: Path | None,
    context_file: Path | None,
) -> None:
    """Generate the STAGE artifact for the prompt in PROMPT_FILE."""
    config: Config = ctx.obj["config"]
    if not config.model.resolved_api_key():
        click.echo("No API key configured (set GOOGLE_AI_API_KEY).", err=True)
        sys.exit(1)
    prompt = prompt_file.read_text(encoding="utf-8")
    messages = _load_messages(messages_file) if messages_file else None
    gate_context = _gate_context(_read_json(context_file)) if context_file else None
    try:
        data = asyncio.run(_generate(config, stage, prompt, messages, gate_context))
    except GenerationFailedError as e:
        click.echo(f"Generation failed: {e}", err=True)
        sys.exit(1)
    except QualityGateError as e:
        click.echo(f"Quality gate blocked: {e}", err=True)
        for issue in e.issues:
            click.echo(f"  [{issue.severity}] {issue.target_path}: {issue.hint}", err=True)
        sys.exit(1)
    click.echo(json.dumps(data, ensure_ascii=False, indent=2))


async def _generate(config, stage, prompt, messages, gate_context):
    services = get_services(config)
    runner = StageRunner(
        services.provider,
        context_manager=services.context_manager,
        cache=services.cache,
        retry_options=services.retry_options,
    )
    try:
        outcome = await runner.run(
            stage, prompt, messages=messages, gate_context=gate_context,
        )
        return outcome.data
    finally:
        reset_services()
        await services.provider.close()


def main() -> None:
    """Entry point for the cognitive-coach command."""
    cli()


if __name__ == "__main__":
    main()
