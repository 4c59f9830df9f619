"""CLI interface for the voice workout coach using Rich.

Typed lines stand in for final speech-recognition transcripts.
"""

import argparse
import logging
import os
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table

from src.agent.llm import GeminiBackend
from src.agent.session import VoiceSession
from src.memory.store import DATA_DIR, JsonFileStore
from src.nlu.models import TurnOutput
from src.tools.workout_store import WorkoutStore, summarize_sets

console = Console()

EMOTION_STYLES = {
    "encouraging": "green",
    "celebratory": "magenta",
    "instructional": "cyan",
    "questioning": "yellow",
    "neutral": "blue",
    "apologetic": "red",
}

COMMANDS_HELP = (
    "/flow shows the open flow, /history the last turns, /profile what has been learned, "
    "/confidence N simulates recognizer confidence, /quit exits."
)


def display_output(output: TurnOutput) -> None:
    """Show one turn's response, actions and follow-up hints."""
    title = f"Coach ({output.emotion})"
    if output.low_confidence:
        title += " [low confidence]"
    console.print(Panel(escape(output.response_text), title=title, style=EMOTION_STYLES.get(output.emotion, "blue")))

    if output.actions:
        table = Table(title="Actions", show_lines=False)
        table.add_column("Kind", style="bold")
        table.add_column("Parameters", style="cyan")
        for action in output.actions:
            params = ", ".join(f"{k}={v}" for k, v in action.parameters.items() if v is not None)
            table.add_row(action.kind, params)
        console.print(table)

    if output.suggested_replies:
        console.print(f"  [dim]Try: {' | '.join(escape(s) for s in output.suggested_replies)}[/dim]")
    if output.intent is not None:
        console.print(
            f"  [dim]intent={output.intent.label} ({output.intent.confidence:.2f}, {output.intent.source})[/dim]"
        )


def display_flow(session: VoiceSession) -> None:
    flow = session.flow_manager.active_flow
    if flow is None:
        console.print("[dim]No active flow.[/dim]")
        return
    data = flow.to_dict()
    console.print(Panel(
        f"Kind: [cyan]{data['kind']}[/cyan]\n"
        f"Step: [cyan]{data['step']}[/cyan]\n"
        f"Data: {escape(str(data['accumulated_data']))}\n"
        f"Timeout: {data['step_timeout_ms']} ms",
        title=f"Flow {data['flow_id']}",
        style="yellow",
    ))


def display_history(session: VoiceSession, limit: int = 10) -> None:
    table = Table(title="Recent turns", show_lines=True)
    table.add_column("You", width=30)
    table.add_column("Coach", width=50)
    table.add_column("Flow", style="dim", width=18)
    for turn in session.memory.recent(limit):
        table.add_row(escape(turn.user_input), escape(turn.system_response_text), turn.flow_kind_at_time or "")
    console.print(table)


def display_profile(session: VoiceSession) -> None:
    session.flush(timeout=5)
    profile = session.profile
    table = Table(title="Learned ranges", show_lines=False)
    table.add_column("Exercise", style="bold")
    table.add_column("Reps", justify="right")
    table.add_column("Weight", justify="right")
    table.add_column("Sets seen", justify="right")
    for exercise, entry in sorted(profile.exercise_ranges.items()):
        reps = entry.get("reps")
        weight = entry.get("weight")
        table.add_row(
            session.vocabulary.display_name(exercise),
            f"{reps[0]}-{reps[1]}" if reps else "-",
            f"{weight[0]}-{weight[1]} {entry.get('unit', '')}" if weight else "-",
            str(entry.get("count", 0)),
        )
    console.print(table)

    summary = ""
    if session.workout_store is not None:
        totals = summarize_sets(session.workout_store.exercise_history())
        summary = f" | Sets logged: {totals['total_sets']} | Volume: {totals['total_volume']}"
    console.print(Panel(
        f"Style: [cyan]{profile.communication_style}[/cyan] | Units: [cyan]{profile.preferred_unit}[/cyan] | "
        f"Mood: [cyan]{session.memory.mood}[/cyan] | Phase: [cyan]{session.memory.phase}[/cyan]{summary}",
        title="Profile",
        style="green",
    ))


def run_voice(user_id: str, data_dir: Path, offline: bool) -> None:
    """Interactive loop: each line is one transcript."""
    backend = None
    if not offline:
        if os.environ.get("GEMINI_API_KEY"):
            backend = GeminiBackend()
        else:
            console.print("[yellow]GEMINI_API_KEY not set, running with local fallback only.[/yellow]")

    session = VoiceSession(
        user_id,
        backend=backend,
        store=JsonFileStore(data_dir / "voice"),
        workout_store=WorkoutStore(data_dir / "workouts"),
    )
    confidence = None
    console.print(Panel(
        "Say (type) what you did, e.g. [cyan]bench press 8 reps at 185[/cyan].\n" + COMMANDS_HELP,
        title="Voice Coach",
        style="blue",
    ))

    try:
        while True:
            try:
                user_input = Prompt.ask("\n[bold]You[/bold]")
            except (KeyboardInterrupt, EOFError):
                user_input = "/quit"

            command = user_input.strip().lower()
            if command in ("/quit", "/exit", "exit", "quit"):
                break
            if command == "/flow":
                display_flow(session)
                continue
            if command == "/history":
                display_history(session)
                continue
            if command == "/profile":
                display_profile(session)
                continue
            if command.startswith("/confidence"):
                parts = command.split()
                try:
                    confidence = float(parts[1]) if len(parts) > 1 else None
                except ValueError:
                    console.print("[red]Usage: /confidence 0.8[/red]")
                    continue
                console.print(f"[dim]Recognizer confidence: {confidence}[/dim]")
                continue
            if command.startswith("/"):
                console.print(f"[dim]{COMMANDS_HELP}[/dim]")
                continue

            output = session.process(user_input, confidence)
            display_output(output)
    finally:
        session.flush(timeout=5)
        session.close()
        console.print("[dim]Session saved. See you next time![/dim]")


def main(args: list[str] | None = None):
    """Main CLI entry point with argument parsing."""
    parser = argparse.ArgumentParser(
        prog="voice-coach",
        description="Voice command understanding and conversation flows for workout tracking",
    )
    parser.add_argument("--user", default="default", help="User id for memory and learned preferences")
    parser.add_argument(
        "--data-dir", type=Path, default=DATA_DIR,
        help="Where memory, profile and workouts are stored (default: data/ or $VOICE_COACH_DATA_DIR)",
    )
    parser.add_argument("--offline", action="store_true", help="Never call the reasoning backend")
    parser.add_argument("-v", "--verbose", action="store_true", help="Show debug logging")

    parsed = parser.parse_args(args)

    logging.basicConfig(
        level=logging.DEBUG if parsed.verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
    )

    run_voice(parsed.user, parsed.data_dir, parsed.offline)


if __name__ == "__main__":
    main()
