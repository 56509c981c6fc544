"""Main CLI entry point for courier."""

import asyncio
import json
import logging

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from . import db
from .config import settings
from .models import Base, Priority
from .reconciliation import reconcile as run_reconcile
from .tasks import AgentType, TaskType

console = Console()


@click.group()
@click.version_option(version="0.1.0")
@click.option("--log-level", default="INFO", show_default=True, help="Logging level")
def main(log_level: str) -> None:
    """Courier: outbound SMS scheduling and background task dispatch."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


@main.command(name="init-db")
def init_db() -> None:
    """Create all tables directly (development only; use alembic in production)."""
    asyncio.run(db.init_db())
    console.print("[green]✓[/green] Tables created")


@main.command(name="schema-check", help="Check DB schema readiness for current code.")
def schema_check() -> None:
    async def check() -> None:
        from sqlalchemy import inspect

        async with db.engine.connect() as conn:
            existing = set(await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names()))

        required = set(Base.metadata.tables)
        missing = required - existing
        if missing:
            console.print(f"[red]Missing tables: {sorted(missing)}[/red]")
            console.print("Run: `uv run alembic upgrade head`")
            raise SystemExit(1)
        console.print("[green]Schema ready[/green]")

    asyncio.run(check())


@main.command()
def db_info() -> None:
    """Show database connection info."""
    console.print(
        Panel(
            f"Host: {settings.db_host}\n"
            f"Port: {settings.db_port}\n"
            f"Database: {settings.db_name}\n"
            f"User: {settings.db_user}",
            title="Database Configuration",
        )
    )


@main.command()
def status() -> None:
    """Show queue and task health counts."""

    async def show_status() -> None:
        async with db.get_session() as session:
            counts = await db.get_health_counts(session)

        table = Table(title="Courier Health")
        table.add_column("Store", style="cyan")
        table.add_column("Status")
        table.add_column("Count", justify="right")
        table.add_row("message_queue", "queued", str(counts["queued"]))
        table.add_row("message_queue", "attempting", str(counts["attempting"]))
        table.add_row("scheduled_tasks", "pending", str(counts["pending"]))
        table.add_row("scheduled_tasks", "claimed", str(counts["claimed"]))
        dead = counts["dead_lettered"]
        table.add_row(
            "scheduled_tasks",
            "dead_lettered",
            f"[red]{dead}[/red]" if dead else str(dead),
        )
        console.print(table)

    asyncio.run(show_status())


@main.command(name="dead-letters")
@click.option("--limit", default=20, help="Number of records to show")
def dead_letters(limit: int) -> None:
    """List recent dead-lettered tasks."""

    async def list_all() -> None:
        async with db.get_session() as session:
            records = await db.list_dead_letters(session, limit=limit)

        if not records:
            console.print("[green]No dead letters[/green]")
            return

        table = Table(title="Dead Letters")
        table.add_column("Task", style="cyan")
        table.add_column("Type")
        table.add_column("Agent")
        table.add_column("Retries", justify="right")
        table.add_column("Error")
        table.add_column("Created")
        for r in records:
            table.add_row(
                r.task_id[:8],
                r.task_type,
                r.agent_type,
                str(r.retry_count),
                r.error_message[:60] + "..." if len(r.error_message) > 60 else r.error_message,
                r.created_at.strftime("%Y-%m-%d %H:%M"),
            )
        console.print(table)

    asyncio.run(list_all())


@main.command()
@click.argument("user_id")
@click.argument("text")
@click.option("--agent", "agent_id", default="concierge", help="Producing agent")
@click.option(
    "--priority",
    type=click.Choice([p.value for p in Priority]),
    default=Priority.MEDIUM.value,
)
@click.option("--topic", default=None, help="Topic for supersession")
@click.option("--fresh-context", is_flag=True, help="Re-check relevance before sending")
@click.option("--can-delay", is_flag=True, help="Defer to the user's next open window")
def enqueue(
    user_id: str,
    text: str,
    agent_id: str,
    priority: str,
    topic: str | None,
    fresh_context: bool,
    can_delay: bool,
) -> None:
    """Queue a literal SMS for USER_ID."""
    from .orchestrator import queue_message

    async def do_enqueue() -> None:
        async with db.get_session() as session:
            message = await queue_message(
                session,
                user_id=user_id,
                agent_id=agent_id,
                message_data={"text": text},
                priority=priority,
                requires_fresh_context=fresh_context,
                topic=topic,
                can_delay=can_delay,
            )
            console.print(
                f"[green]✓[/green] Queued {message.id} for {message.scheduled_for.isoformat()}"
            )

    asyncio.run(do_enqueue())


@main.command(name="create-task")
@click.option("--type", "task_type", type=click.Choice([t.value for t in TaskType]), required=True)
@click.option("--agent", "agent_type", type=click.Choice([a.value for a in AgentType]), required=True)
@click.option("--user", "user_id", default=None)
@click.option("--context", "context_json", default="{}", help="JSON payload")
@click.option(
    "--priority",
    type=click.Choice([p.value for p in Priority]),
    default=Priority.MEDIUM.value,
)
@click.option("--max-retries", type=int, default=None)
def create_task(
    task_type: str,
    agent_type: str,
    user_id: str | None,
    context_json: str,
    priority: str,
    max_retries: int | None,
) -> None:
    """Create a pending background task."""
    try:
        context = json.loads(context_json)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"--context is not valid JSON: {e}") from e

    async def do_create() -> None:
        async with db.get_session() as session:
            task = await db.create_task(
                session,
                task_type=task_type,
                agent_type=agent_type,
                user_id=user_id,
                context_json=context,
                priority=priority,
                max_retries=max_retries,
                created_by="cli",
            )
            console.print(f"[green]✓[/green] Created task {task.id}")

    asyncio.run(do_create())


@main.command()
@click.option("--once", is_flag=True, help="Run a single tick and exit")
def orchestrate(once: bool) -> None:
    """Run the outbound message scheduling loop."""
    from .workers.orchestrator_worker import OrchestratorWorker, build_orchestrator

    orchestrator = build_orchestrator()
    if once:
        result = asyncio.run(orchestrator.run_tick())
        console.print(
            f"claimed={result.claimed} sent={result.sent} rescheduled={result.rescheduled} "
            f"superseded={result.superseded} retried={result.retried} failed={result.failed}"
        )
        return
    asyncio.run(OrchestratorWorker(orchestrator).run_forever())


@main.command()
@click.option("--once", is_flag=True, help="Run a single tick and exit")
def dispatch(once: bool) -> None:
    """Run the background task dispatch loop."""
    from .workers.dispatcher_worker import DispatcherWorker, build_dispatcher

    dispatcher = build_dispatcher()
    if once:
        result = asyncio.run(dispatcher.run_tick())
        console.print(
            f"claimed={result.claimed} completed={result.completed} retried={result.retried} "
            f"failed_permanent={result.failed_permanent} dead_lettered={result.dead_lettered} "
            f"parked={result.parked}"
        )
        return
    asyncio.run(DispatcherWorker(dispatcher).run_forever())


@main.command()
def reconcile() -> None:
    """Requeue stale attempting messages and claimed tasks."""
    result = asyncio.run(run_reconcile())
    console.print(
        f"Requeued {result.messages_requeued} message(s), {result.tasks_requeued} task(s)"
    )


if __name__ == "__main__":
    main()
