"""Command-line front end: stream one sidebar task to the terminal."""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Optional

from rich.console import Console, Group
from rich.live import Live
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from .cancellation import CancelOnInterrupt
from .config import Provider, ProviderConfig
from .ollama_channel import ChannelError, OllamaChannel, format_model_size
from .prompts import build_explain_prompt, build_translate_prompt
from .runner import TaskRunner
from .task_store import DEFAULT_PURPOSE_KEYS, TaskContext, TaskContextStore
from .thinking import ThinkingMode


def _render(ctx: TaskContext) -> Group:
    parts = []
    if ctx.streaming_reasoning:
        parts.append(Panel(Text(ctx.streaming_reasoning, style="dim"),
                           title="Thinking", border_style="magenta"))
    if ctx.streaming_answer:
        parts.append(Panel(Markdown(ctx.streaming_answer), title=ctx.purpose_key,
                           border_style="cyan"))
    return Group(*parts)


def _build_prompt(purpose: str, text: str) -> str:
    if purpose.startswith("translate:"):
        return build_translate_prompt(text, purpose.split(":", 1)[1])
    if purpose == "explain":
        return build_explain_prompt(text)
    return text


async def list_models(config: ProviderConfig, console: Console) -> int:
    try:
        models = await OllamaChannel().list_models(config.ollama_url)
    except ChannelError as e:
        console.print(f"[red]{e}[/red]")
        return 1
    table = Table(title=f"Ollama models at {config.ollama_url}")
    table.add_column("Name")
    table.add_column("Size", justify="right")
    table.add_column("Modified")
    for model in models:
        table.add_row(model.name, format_model_size(model.size), model.modified_at)
    console.print(table)
    return 0


async def run_task(config: ProviderConfig, purpose: str, text: str,
                   mode: Optional[str], console: Console, as_json: bool = False) -> int:
    store = TaskContextStore()
    runner = TaskRunner(store, config)
    prompt = _build_prompt(purpose, text)
    handle = store.start_task(purpose)

    with CancelOnInterrupt(handle.token):
        if as_json:
            ctx = await runner.run(purpose, prompt, source_text=text,
                                   thinking_mode=mode, handle=handle)
        else:
            with Live(console=console, refresh_per_second=12, transient=True) as live:
                task = asyncio.ensure_future(runner.run(
                    purpose, prompt, source_text=text, thinking_mode=mode, handle=handle))
                while not task.done():
                    live.update(_render(store.get(purpose)))
                    await asyncio.sleep(0.08)
                ctx = task.result()

    if as_json:
        print(json.dumps({
            "purpose": purpose,
            "answer": ctx.result.answer if ctx.result else ctx.streaming_answer,
            "reasoning": ctx.result.reasoning if ctx.result else ctx.streaming_reasoning,
            "error": ctx.failure,
            "cancelled": handle.token.cancelled,
        }, ensure_ascii=False, indent=2))
    elif ctx.failure:
        console.print(Panel(ctx.failure, title="Error", border_style="red"))
    elif ctx.result:
        if ctx.result.reasoning:
            console.print(Panel(Text(ctx.result.reasoning, style="dim"),
                                title="Thinking", border_style="magenta"))
        console.print(Panel(Markdown(ctx.result.answer or ""), title=purpose,
                            border_style="green"))
    else:
        console.print("\n[yellow][STOP] Cancelled[/yellow]")
        if ctx.streaming_answer:
            console.print(Panel(Markdown(ctx.streaming_answer), title=f"{purpose} (partial)",
                                border_style="yellow"))
    if ctx.failure:
        return 1
    return 0 if ctx.result else 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="readerai",
        description="Stream a translate/explain/chat task from the configured model",
    )
    parser.add_argument("text", nargs="?", help="Text to process (default: read stdin)")
    parser.add_argument("--purpose", default="chat", choices=DEFAULT_PURPOSE_KEYS,
                        help="Task slot / prompt template to use")
    parser.add_argument("--provider", choices=[p.value for p in Provider],
                        help="Override the configured provider")
    parser.add_argument("--model", help="Override the model for the selected provider")
    parser.add_argument("--mode", choices=[m.value for m in ThinkingMode],
                        help="Thinking mode (default: from config)")
    parser.add_argument("--env", type=Path, help="Path to a .env file")
    parser.add_argument("--json", action="store_true", help="Print the result as JSON")
    parser.add_argument("--list-models", action="store_true",
                        help="List models installed on the Ollama server and exit")
    return parser


def _apply_overrides(config: ProviderConfig, args: argparse.Namespace) -> None:
    if args.provider:
        config.provider = Provider(args.provider)
    if args.model:
        if config.provider is Provider.OPENAI_COMPATIBLE:
            config.openai_model = args.model
        elif config.provider is Provider.OLLAMA:
            config.ollama_model = args.model
        else:
            config.builtin_model_id = args.model


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    console = Console(stderr=args.json)
    config = ProviderConfig.from_env(args.env)
    _apply_overrides(config, args)

    if args.list_models:
        return asyncio.run(list_models(config, console))

    text = args.text
    if text is None:
        if sys.stdin.isatty():
            console.print("Enter text (Ctrl+D to submit):")
        text = sys.stdin.read()
    text = (text or "").strip()
    if not text:
        console.print("[red]No input provided.[/red]")
        return 1

    try:
        config.validate()
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        return 1

    return asyncio.run(run_task(config, args.purpose, text, args.mode, console, args.json))


if __name__ == "__main__":
    sys.exit(main())
