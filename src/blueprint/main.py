"""
Lifestyle Blueprint - CLI Entry Point.

Usage:
    blueprint serve             Run the web API
    blueprint chat              Run the onboarding conversation in the terminal
    blueprint calories ...      Print a calorie calculation
    blueprint health            Check configuration
    blueprint --help            Show help
"""

import asyncio

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from blueprint.events import ConversationEvent, EventType

app = typer.Typer(
    name="blueprint",
    help="Lifestyle Blueprint - personalized meal plan onboarding.",
    add_completion=False,
)
console = Console()

EXIT_WORDS = ("exit", "quit", "q")


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", help="Bind address"),
    port: int = typer.Option(8000, help="Port"),
    reload: bool = typer.Option(False, "--reload", help="Reload on code changes"),
) -> None:
    """Run the web API with uvicorn."""
    import uvicorn

    uvicorn.run("blueprint.web.app:app", host=host, port=port, reload=reload)


@app.command()
def calories(
    height: float = typer.Option(..., "--height", help="Height in inches"),
    weight: float = typer.Option(..., "--weight", help="Weight in pounds"),
    age: int = typer.Option(..., "--age", help="Age in years"),
    sex: str = typer.Option("MALE", "--sex", help="MALE, FEMALE or PREFER_NOT_TO_SAY"),
    activity: str = typer.Option("2", "--activity", help="Activity tier 1-5"),
    goal: str = typer.Option("MAINTENANCE", "--goal", help="LOSE_WEIGHT, GAIN_MUSCLE or MAINTENANCE"),
) -> None:
    """Print the calorie and macro targets for the given metrics."""
    from blueprint.calculator import (
        CalorieInputs,
        calculate_all,
        resolve_activity_level,
        resolve_fitness_goal,
        resolve_sex,
    )

    result = calculate_all(CalorieInputs(
        height_inches=height,
        weight_pounds=weight,
        age=age,
        sex=resolve_sex(sex),
        activity_level=resolve_activity_level(activity),
        goal=resolve_fitness_goal(goal),
    ))

    console.print(f"\n[bold]BMR:[/bold] {result.bmr:,}   [bold]TDEE:[/bold] {result.tdee:,}   "
                  f"[bold]Weekly:[/bold] {result.weekly_calories:,}")

    table = Table(title=f"5:2 split ({result.macro_type} macros)")
    table.add_column("Days")
    table.add_column("Calories", justify="right")
    table.add_column("Macros (P/C/F %)")
    table.add_column("Protein g", justify="right")
    table.add_column("Carbs g", justify="right")
    table.add_column("Fat g", justify="right")
    for label, kcal, split, grams in (
        ("Weekdays", result.split.weekday_calories, result.weekday_macros, result.weekday_grams),
        ("Weekends", result.split.weekend_calories, result.weekend_macros, result.weekend_grams),
    ):
        table.add_row(label, f"{kcal:,}", split.ratio(), str(grams.protein), str(grams.carbs), str(grams.fat))
    console.print(table)


@app.command()
def chat(
    user_id: str = typer.Option(None, "--user", "-u", help="User id (defaults to DEV_USER_ID)"),
) -> None:
    """Run the onboarding conversation in the terminal."""
    from blueprint.config import configure_logging, settings

    configure_logging("WARNING")
    console.print(
        Panel.fit(
            "[bold green]Lifestyle Blueprint[/bold green]\n"
            "Let's build your personalized meal plan.\n\n"
            "[dim]Pick options by number. Type 'exit' or 'quit' to end the session.[/dim]",
            title="Welcome",
            border_style="green",
        )
    )

    try:
        asyncio.run(_chat(user_id or settings.dev_user_id))
    except KeyboardInterrupt:
        console.print("\n\n[dim]Session interrupted. Goodbye![/dim]")


@app.command()
def health() -> None:
    """Check configuration."""
    from blueprint import __version__
    from blueprint.config import get_settings

    console.print(f"\n[bold]Lifestyle Blueprint {__version__} Health Check[/bold]\n")

    try:
        settings = get_settings()
        console.print("✅ Configuration loaded")
        console.print(f"   Environment: {settings.blueprint_env}")
        console.print(f"   Log level: {settings.log_level}")

        if settings.supabase_url.startswith("https://"):
            console.print("✅ Supabase URL configured")
        else:
            console.print("⚠️  Supabase URL is not https (local development?)")

        if settings.supabase_service_role_key:
            console.print("✅ Supabase service role key configured")
        else:
            console.print("⚠️  No service role key, falling back to the anon key")

        console.print(f"ℹ️  Generation service: {settings.generation_api_url}")

        if settings.webhook_secret:
            console.print("✅ Webhook signatures verified")
        else:
            console.print("ℹ️  Webhook signatures not verified")

        console.print("\n[green]All checks passed![/green]")

    except Exception as e:
        console.print(f"\n[red]❌ Configuration error: {e}[/red]")
        console.print("[dim]Make sure you have a .env file with required variables.[/dim]")
        raise typer.Exit(1)


# =============================================================================
# Terminal chat
# =============================================================================


async def _chat(user_id: str) -> None:
    from blueprint.db.store import SupabaseStore
    from blueprint.generation import GenerationPipeline, HttpGenerationBackend
    from blueprint.orchestrator import StageOrchestrator
    from blueprint.state import ConversationSession

    store = SupabaseStore()
    backend = HttpGenerationBackend()
    # No progress relay in the terminal; progress is simulated
    pipeline = GenerationPipeline(store, backend)
    orchestrator = StageOrchestrator(ConversationSession(user_id=user_id), store, pipeline)
    orchestrator.events.subscribe(print_event)

    try:
        await orchestrator.start()
        while True:
            await orchestrator.wait_idle()
            if orchestrator.finished:
                break

            choices = orchestrator.collector.current_choices
            user_input = (await asyncio.to_thread(console.input, "\n[bold blue]You:[/bold blue] ")).strip()
            if user_input.lower() in EXIT_WORDS:
                console.print("\n[dim]Goodbye![/dim]")
                break
            if not user_input:
                continue

            if choices:
                value = pick_choice(choices, user_input)
                if value is None:
                    console.print("[yellow]Please pick one of the numbered options.[/yellow]")
                    continue
                await orchestrator.select(value)
            else:
                await orchestrator.route_input(user_input)
    finally:
        await backend.aclose()


def pick_choice(choices: list[dict], text: str) -> str | None:
    """Map '2', a value or a label to the choice's value."""
    text = text.strip()
    if text.isdigit() and 1 <= int(text) <= len(choices):
        return str(choices[int(text) - 1]["value"])
    for choice in choices:
        if text.lower() in (str(choice["value"]).lower(), str(choice["label"]).lower()):
            return str(choice["value"])
    return None


def print_event(event: ConversationEvent) -> None:
    payload = event.payload
    if event.type == EventType.BOT_MESSAGE:
        console.print(f"\n[bold green]Blueprint:[/bold green] {payload['text']}")
        for number, choice in enumerate(payload.get("choices") or [], start=1):
            console.print(f"  [cyan]{number}.[/cyan] {choice['label']}")
    elif event.type == EventType.ERROR:
        console.print(f"[red]{payload['text']}[/red]")
    elif event.type == EventType.PROGRESS:
        label = payload.get("message") or payload.get("step") or ""
        console.print(f"[dim]  {payload.get('percent', 0)}% {label}[/dim]")
    elif event.type == EventType.GENERATION_STATUS and payload.get("text"):
        console.print(f"[dim]  {payload['text']}[/dim]")
    elif event.type == EventType.ARTIFACT_READY:
        if payload.get("artifact") == "meal_plan":
            console.print(meal_plan_table(payload["meal_plan"]))
        elif payload.get("artifact") == "shopping_list":
            console.print(shopping_list_table(payload["shopping_list"]))


def meal_plan_table(plan: dict) -> Table:
    table = Table(title="Your meal plan")
    table.add_column("Day", justify="right")
    table.add_column("Breakfast")
    table.add_column("Lunch")
    table.add_column("Dinner")
    by_slot = {(meal["day"], meal["meal_type"]): meal["name"] for meal in plan.get("meals", [])}
    for day in sorted({meal["day"] for meal in plan.get("meals", [])}):
        table.add_row(
            str(day),
            by_slot.get((day, "breakfast"), ""),
            by_slot.get((day, "lunch"), ""),
            by_slot.get((day, "dinner"), ""),
        )
    return table


def shopping_list_table(grouped: dict[str, list[dict]]) -> Table:
    table = Table(title="Your shopping list")
    table.add_column("Category")
    table.add_column("Item")
    table.add_column("Quantity", justify="right")
    for category, items in grouped.items():
        for item in items:
            quantity = " ".join(str(part) for part in (item.get("quantity"), item.get("unit")) if part)
            table.add_row(category, item.get("ingredient_name") or "", quantity)
    return table


if __name__ == "__main__":
    app()
