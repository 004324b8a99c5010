"""CLI entrypoint (Typer).

- `reqflow serve`                     run the API
- `reqflow init-db`                   create tables
- `reqflow run "<idea>" --user <id>`  run every stage and print the blueprint
- `reqflow summary <session-id>`      print the text digest of a session
- `reqflow seed`                      reset the database and load demo data
"""

from __future__ import annotations

import asyncio
import json
import logging

import typer

from reqflow.config import get_settings
from reqflow.errors import ReqFlowError

app = typer.Typer(help="ReqFlow requirement-gathering CLI.")


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def _machine():
    from reqflow.agent.invoker import get_invoker
    from reqflow.agent.machine import SessionStateMachine
    from reqflow.database.repository import SessionRepository, UserRepository
    from reqflow.database.session import get_session_maker

    maker = get_session_maker()
    return SessionStateMachine(SessionRepository(maker), UserRepository(maker), get_invoker())


@app.command()
def serve(reload: bool = typer.Option(False, "--reload", help="Reload on code changes")):
    """Run the HTTP API with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run("reqflow.api.main:app", host=settings.api_host, port=settings.api_port, reload=reload)


@app.command("init-db")
def init_db_command():
    """Create database tables."""
    from reqflow.database.session import close_db, init_db

    async def _run() -> None:
        try:
            await init_db()
        finally:
            await close_db()

    asyncio.run(_run())
    typer.echo("Database initialized.")


@app.command()
def run(
    idea: str,
    user: str = typer.Option(..., "--user", help="Id of the session owner"),
    option: int = typer.Option(0, "--option", help="Conflict option to choose"),
    finalize: bool = typer.Option(False, "--finalize", help="Mark the session complete"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Run every stage on a new session and print its blueprint."""
    from reqflow.agent.compiler import build_blueprint
    from reqflow.agent.workflow import run_pipeline
    from reqflow.database.session import close_db
    from reqflow.llm.router import close_router

    _configure_logging(verbose)

    async def _run() -> tuple[dict | None, str | None]:
        machine = _machine()
        try:
            state = await run_pipeline(machine, idea, user, chosen_option=option, finalize=finalize)
            if state.get("error"):
                return None, f"{state.get('failed_step')}: {state['error']}"
            document = await machine.get_session(state["session_id"])
            return build_blueprint(document).model_dump(mode="json", by_alias=True), None
        finally:
            await close_router()
            await close_db()

    blueprint, error = asyncio.run(_run())
    if error:
        typer.echo(error, err=True)
        raise typer.Exit(code=1)
    typer.echo(json.dumps(blueprint, indent=2))


@app.command()
def seed(
    live: bool = typer.Option(False, "--live", help="Use the configured model provider instead of the offline mock"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Wipe the database and fill it with demo users and sessions."""
    from reqflow.agent.invoker import AgentInvoker
    from reqflow.agent.machine import SessionStateMachine
    from reqflow.agent.seed import seed_demo_data
    from reqflow.database.repository import SessionRepository, UserRepository
    from reqflow.database.session import close_db, get_session_maker, reset_db
    from reqflow.llm.router import ModelRouter

    _configure_logging(verbose)
    if not yes:
        typer.confirm("This deletes every user and session. Continue?", abort=True)

    settings = get_settings()
    if not live:
        settings = settings.model_copy(update={"primary_provider": "mock", "llm_fallback_enabled": False})

    async def _run():
        router = ModelRouter(settings=settings)
        try:
            await reset_db()
            maker = get_session_maker()
            machine = SessionStateMachine(
                SessionRepository(maker),
                UserRepository(maker),
                AgentInvoker(router=router, settings=settings),
            )
            return await seed_demo_data(machine)
        finally:
            await router.close()
            await close_db()

    try:
        seeded = asyncio.run(_run())
    except ReqFlowError as e:
        typer.echo(e.message, err=True)
        raise typer.Exit(code=1)
    for entry in seeded:
        typer.echo(f"{entry.username:<10} {entry.session_id}  {entry.status.value}")


@app.command()
def summary(session_id: str):
    """Print the text digest of a session."""
    from reqflow.agent.compiler import compile_summary
    from reqflow.database.session import close_db

    async def _run() -> str:
        try:
            result = await compile_summary(_machine().sessions, session_id)
            return result.final_summary
        finally:
            await close_db()

    try:
        typer.echo(asyncio.run(_run()))
    except ReqFlowError as e:
        typer.echo(e.message, err=True)
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
