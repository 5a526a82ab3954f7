from __future__ import annotations

import asyncio
from typing import Any, List, Sequence

import typer

from . import services
from .errors import FamiliarError

app = typer.Typer(help="Re-GenX familiar diagnostics console")


def _render_table(headers: Sequence[str], rows: Sequence[Sequence[str]]) -> str:
    if not headers:
        return ""

    widths = [len(header) for header in headers]
    for row in rows:
        for idx, cell in enumerate(row):
            widths[idx] = max(widths[idx], len(cell))

    def build_border() -> str:
        return "+".join([""] + ["-" * (width + 2) for width in widths] + [""])

    def build_row(cells: Sequence[str]) -> str:
        content = "|".join(f" {cells[idx].ljust(widths[idx])} " for idx in range(len(headers)))
        return f"|{content}|"

    border = build_border()
    body = [build_row(row) for row in rows]
    return "\n".join([border, build_row(headers), border, *body, border])


def _stringify(value: Any) -> str:
    if value is None:
        return "—"
    if isinstance(value, float):
        return f"{value:.3f}".rstrip("0").rstrip(".")
    return str(value)


def _run(coro: Any) -> Any:
    try:
        return asyncio.run(coro)
    except FamiliarError as err:
        typer.echo(f"Error: {err.message}", err=True)
        raise typer.Exit(code=1)


@app.command("create")
def create(user_id: str) -> None:
    """Create (or fetch) the familiar for a user and arm its timers."""

    familiar = _run(services.create_familiar(user_id))
    typer.echo(f"Familiar {familiar.id} lives in the {familiar.biome.value} biome.")


@app.command("state")
def state(
    user_id: str,
    fields: List[str] = typer.Option([], "--field", "-f", help="Specific familiar fields to include."),
) -> None:
    """Show a familiar's vitals, cooldowns and pending timers."""

    overview = _run(services.get_familiar_overview(user_id))
    familiar = overview["familiar"]
    summary = {key: value for key, value in familiar.items() if key not in {"stats", "mutations"}}
    summary["mutations"] = len(familiar["mutations"])
    summary["next_evolution_cycle"] = overview["next_evolution_cycle"]
    summary["next_care_decay"] = overview["next_care_decay"]
    if fields:
        missing = [key for key in fields if key not in summary]
        if missing:
            typer.echo(f"Unknown familiar field: {', '.join(sorted(set(missing)))}", err=True)
            raise typer.Exit(code=1)
        summary = {key: summary[key] for key in fields}

    typer.echo(_render_table(["Field", "Value"], [[key, _stringify(value)] for key, value in summary.items()]))

    if not fields:
        rows = [
            [category, stat, _stringify(value)]
            for category, values in familiar["stats"].items()
            for stat, value in values.items()
        ]
        typer.echo(_render_table(["Category", "Stat", "Value"], rows))
        cooldowns = [[action, _stringify(seconds)] for action, seconds in overview["cooldowns"].items()]
        typer.echo(_render_table(["Action", "Cooldown (s)"], cooldowns))


@app.command("care")
def care(user_id: str, action: str = typer.Argument(..., help="feed, play or attention")) -> None:
    """Perform a care action."""

    result = _run(services.perform_care_action(user_id, action))
    typer.echo(
        f"Care meter {result.care_meter} (+{result.care_meter_increase}), "
        f"evolution points {result.evolution_points} (+{result.evolution_points_gained})"
    )


@app.command("mutate")
def mutate(user_id: str) -> None:
    """Spend evolution points and list the offered mutation options."""

    choice = _run(services.trigger_mutation(user_id))
    typer.echo(f"Session: {choice.session_id}")
    rows = [[option.id, option.category.value, option.label, _stringify(option.value)] for option in choice.options]
    typer.echo(_render_table(["Option", "Category", "Label", "Value"], rows))


@app.command("choose")
def choose(session_id: str, option_id: str) -> None:
    """Apply one option from an open mutation session."""

    mutation = _run(services.choose_mutation(session_id, option_id))
    trait = mutation.traits[0]
    typer.echo(f"Applied {mutation.id}: {trait.category.value} = {_stringify(trait.value)}")
    rows = [
        [category, stat, f"{delta:+d}"]
        for category, changes in mutation.stat_effects.items()
        for stat, delta in changes.items()
    ]
    if rows:
        typer.echo(_render_table(["Category", "Stat", "Delta"], rows))


@app.command("evolve")
def evolve(user_id: str) -> None:
    """Run one evolution cycle immediately."""

    familiar = _run(services.run_evolution_cycle(user_id))
    typer.echo(f"Age {familiar.age}, care meter {familiar.care_meter}, biome {familiar.biome.value}")


@app.command("jobs")
def jobs(run_due: bool = typer.Option(False, "--run-due", help="Dispatch every job that is due now.")) -> None:
    """List pending timer jobs."""

    engine = services.get_engine()
    if run_due:
        dispatched = _run(services.run_due_jobs(engine))
        typer.echo(f"Dispatched {dispatched} job(s).")

    pending = _run(engine.jobs.pending())
    if not pending:
        typer.echo("(none)")
        return
    typer.echo(_render_table(["Job", "Runs at"], [[member, run_at.isoformat()] for member, run_at in pending]))


@app.command("serve")
def serve(
    host: str = typer.Option("127.0.0.1", help="Interface to bind."),
    port: int = typer.Option(8000, help="Port to listen on."),
) -> None:
    """Run the HTTP API with the background job poller."""

    import uvicorn

    uvicorn.run("regenx.main:app", host=host, port=port)


if __name__ == "__main__":
    app()
