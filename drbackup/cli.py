"""drbackup command line interface.

One command per pipeline kind, for cron or manual use. Each exits with the
pipeline's exit code: 0 done, 1 fatal stage failure, 2 already running,
3 timeout, 130 interrupted.
"""

import logging
import signal
import threading
from typing import Optional

import typer

from drbackup import __version__, configure_logging
from drbackup.backup.executor import run_pipeline
from drbackup.backup.guard import ExecutionGuard
from drbackup.config import load_config
from drbackup.models import ExitCode, PipelineKind
from drbackup.utils.crypto import encrypt_secret


app = typer.Typer(
    name="drbackup",
    help="Mutually exclusive RMAN backup pipeline with DR replication.",
    no_args_is_help=True,
)

logger = logging.getLogger(__name__)

ConfigOption = typer.Option(None, "--config", "-c", help="Configuration name (development, production, testing).")


def _run(kind: PipelineKind, level: Optional[int], config_name: Optional[str]):
    try:
        config = load_config(config_name)
        configure_logging(config)
        if kind == PipelineKind.INCREMENTAL and level is None:
            level = config.INCREMENTAL_LEVEL
        run = run_pipeline(kind, level, config)
    except (ValueError, OSError) as e:
        logger.error(f"Cannot start {kind.value} pipeline: {e}")
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=int(ExitCode.FATAL_STAGE_FAILURE))

    if run.exit_code == ExitCode.OK:
        typer.echo(f"{kind.value}: done ({len(run.degraded_failures)} degraded)")
    else:
        typer.echo(f"{kind.value}: {run.outcome.value} at {run.failed_stage.value}: {run.error_message}", err=True)
    raise typer.Exit(code=int(run.exit_code))


@app.command()
def full(config_name: Optional[str] = ConfigOption) -> None:
    """Level 0 database backup."""
    _run(PipelineKind.FULL, 0, config_name)


@app.command()
def incremental(
    level: Optional[int] = typer.Option(None, "--level", "-l", min=1, help="Incremental level (default INCREMENTAL_LEVEL)."),
    config_name: Optional[str] = ConfigOption,
) -> None:
    """Incremental database backup."""
    _run(PipelineKind.INCREMENTAL, level, config_name)


@app.command()
def archivelog(config_name: Optional[str] = ConfigOption) -> None:
    """Archived redo log backup."""
    _run(PipelineKind.ARCHIVELOG, None, config_name)


@app.command("dr-trigger")
def dr_trigger(config_name: Optional[str] = ConfigOption) -> None:
    """Replicate to the DR site and start the remote restore."""
    _run(PipelineKind.DR_TRIGGER, None, config_name)


@app.command()
def status(config_name: Optional[str] = ConfigOption) -> None:
    """Show which pipeline kinds are currently running."""
    try:
        config = load_config(config_name)
        guard = ExecutionGuard(config.LOCK_DIR)
    except (ValueError, OSError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=int(ExitCode.FATAL_STAGE_FAILURE))

    for kind in PipelineKind:
        state = "running" if guard.is_held(kind) else "idle"
        typer.echo(f"{kind.value:<12} {state}")


@app.command()
def schedule(config_name: Optional[str] = ConfigOption) -> None:
    """
    Run all pipeline kinds on their configured cron schedules.

    SIGINT/SIGTERM stop the scheduler. Running pipelines finish their
    current stage, then abort as interrupted and release their locks.
    """
    from drbackup.scheduler import init_scheduler, start_scheduler, stop_scheduler

    config = load_config(config_name)
    configure_logging(config)

    stop_event = threading.Event()
    signal.signal(signal.SIGINT, lambda signum, frame: stop_event.set())
    signal.signal(signal.SIGTERM, lambda signum, frame: stop_event.set())

    init_scheduler(config)
    start_scheduler()
    try:
        stop_event.wait()
    finally:
        stop_scheduler()


@app.command("encrypt-secret")
def encrypt_secret_command(
    master_password: str = typer.Option(..., prompt=True, hide_input=True, help="Master password."),
    secret: str = typer.Option(..., prompt=True, hide_input=True, help="Secret to encrypt."),
    salt: Optional[str] = typer.Option(None, help="Existing base64 salt to reuse."),
) -> None:
    """Encrypt a secret for DR_PASSWORD_ENCRYPTED."""
    encrypted, salt_b64 = encrypt_secret(master_password, secret, salt)
    typer.echo(f"DR_PASSWORD_ENCRYPTED={encrypted}")
    typer.echo(f"DRBACKUP_MASTER_SALT={salt_b64}")


@app.command()
def version() -> None:
    """Show version."""
    typer.echo(f"drbackup {__version__}")
