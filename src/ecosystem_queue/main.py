"""CLI entrypoint for ecosystem-queue."""

from pathlib import Path

import rich_click as click

from ecosystem_queue import __version__
from ecosystem_queue.controllers import (
    BatchChatsCommand,
    CampaignRenameCommand,
    DbCommand,
    DispatchContinuationsCommand,
    DispatchCycleCommand,
    DispatchWorkerCommand,
    EcosystemsListCommand,
    GovernorSetCommand,
    QueueClearCommand,
    QueueCliController,
    QueueEnqueueCommand,
    QueueListCommand,
    QueueReportCommand,
    QueueTaskCommand,
    TopicActionCommand,
)
from ecosystem_queue.errors import SecretMismatchError
from ecosystem_queue.logging_setup import configure_logging
from ecosystem_queue.provisioning.models import EcosystemStatus
from ecosystem_queue.provisioning.provisioner import TOPIC_MARKETPLACE
from ecosystem_queue.queue.models import QueueName, TaskStatus, TaskType
from ecosystem_queue.queue.services import CAMPAIGN_MESSAGE, CAMPAIGN_TOPIC_TITLE

click.rich_click.USE_MARKDOWN = True
CONTROLLER = QueueCliController()

DB_PATH_OPTION = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)
QUEUE_CHOICE = click.Choice([queue.value for queue in QueueName])


@click.group()
@click.version_option(version=__version__, prog_name="ecosystem-queue")
def ecosystem_queue() -> None:
    """Task queue and dispatcher for neighborhood chat ecosystems."""

    configure_logging()


@ecosystem_queue.group()
def queue() -> None:
    """Task queue commands."""


@queue.command("enqueue")
@DB_PATH_OPTION
@click.argument("task_type", type=click.Choice([task_type.value for task_type in TaskType]))
@click.option("--payload", "payload_json", required=True, help="Task payload as a JSON object.")
@click.option(
    "--delay",
    "delay_seconds",
    type=click.IntRange(min=0),
    default=0,
    show_default=True,
    help="Seconds before the task becomes due.",
)
@click.option("--queue", "queue_name", type=QUEUE_CHOICE, default=None, help="Override queue.")
def queue_enqueue(
    db_path: Path | None,
    task_type: str,
    payload_json: str,
    delay_seconds: int,
    queue_name: str | None,
) -> None:
    """Enqueue one task with a raw JSON payload."""

    try:
        lines = CONTROLLER.enqueue(
            QueueEnqueueCommand(
                db_path=db_path,
                task_type=task_type,
                payload_json=payload_json,
                delay_seconds=delay_seconds,
                queue=queue_name,
            ),
        )
    except ValueError as error:
        raise click.BadParameter(str(error), param_hint="--payload") from error
    _emit_lines(lines)


@queue.command("list")
@DB_PATH_OPTION
@click.option(
    "--status",
    type=click.Choice([status.value for status in TaskStatus]),
    default=None,
    help="Filter by status.",
)
@click.option("--queue", "queue_name", type=QUEUE_CHOICE, default=None, help="Filter by queue.")
@click.option("--limit", type=click.IntRange(min=1, max=1000), default=50, show_default=True)
def queue_list(
    db_path: Path | None,
    status: str | None,
    queue_name: str | None,
    limit: int,
) -> None:
    """List tasks in claim order."""

    _emit_lines(
        CONTROLLER.list_tasks(
            QueueListCommand(db_path=db_path, status=status, queue=queue_name, limit=limit),
        ),
    )


@queue.command("inspect")
@DB_PATH_OPTION
@click.argument("task_id", type=int)
def queue_inspect(db_path: Path | None, task_id: int) -> None:
    """Show a task with its event history."""

    _emit_lines(CONTROLLER.inspect_task(QueueTaskCommand(db_path=db_path, task_id=task_id)))


@queue.command("delete")
@DB_PATH_OPTION
@click.argument("task_id", type=int)
def queue_delete(db_path: Path | None, task_id: int) -> None:
    """Delete one task."""

    _emit_lines(CONTROLLER.delete_task(QueueTaskCommand(db_path=db_path, task_id=task_id)))


@queue.command("clear")
@DB_PATH_OPTION
@click.option(
    "--status",
    type=click.Choice([TaskStatus.FAILED.value, TaskStatus.COMPLETED.value]),
    default=TaskStatus.FAILED.value,
    show_default=True,
)
@click.option("--queue", "queue_name", type=QUEUE_CHOICE, default=None, help="Limit to one queue.")
def queue_clear(db_path: Path | None, status: str, queue_name: str | None) -> None:
    """Delete every task in a terminal status."""

    _emit_lines(
        CONTROLLER.clear(QueueClearCommand(db_path=db_path, status=status, queue=queue_name)),
    )


@queue.command("report")
@DB_PATH_OPTION
@click.option("--limit", type=click.IntRange(min=1, max=1000), default=50, show_default=True)
def queue_report(db_path: Path | None, limit: int) -> None:
    """Counts, failures with raw errors, postponed tasks and the FloodWait state."""

    _emit_lines(CONTROLLER.report(QueueReportCommand(db_path=db_path, limit=limit)))


@queue.command("batch-chats")
@DB_PATH_OPTION
@click.argument("file_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def queue_batch_chats(db_path: Path | None, file_path: Path) -> None:
    """Schedule `create_chat` tasks from a JSON list of `{title, district}` entries."""

    try:
        lines = CONTROLLER.batch_chats(BatchChatsCommand(db_path=db_path, file_path=file_path))
    except ValueError as error:
        raise click.BadParameter(str(error), param_hint="FILE_PATH") from error
    _emit_lines(lines)


@queue.command("topic-action")
@DB_PATH_OPTION
@click.option("--chat-id", "chat_ids", multiple=True, required=True, help="Can be repeated.")
@click.option("--topic-name", default=None, help="Exact topic title.")
@click.option("--topic-id", type=int, default=None, help="Numeric topic id.")
@click.option("--message", default=None, help="Message to post into the topic.")
@click.option("--pin/--no-pin", default=False, show_default=True)
@click.option(
    "--state",
    "state_action",
    type=click.Choice(["close", "open"]),
    default=None,
    help="Close or reopen the topic.",
)
def queue_topic_action(  # noqa: PLR0913
    db_path: Path | None,
    chat_ids: tuple[str, ...],
    topic_name: str | None,
    topic_id: int | None,
    message: str | None,
    pin: bool,
    state_action: str | None,
) -> None:
    """Enqueue a message and/or a close/open action for each chat."""

    try:
        lines = CONTROLLER.topic_action(
            TopicActionCommand(
                db_path=db_path,
                chat_ids=chat_ids,
                topic_name=topic_name,
                topic_id=topic_id,
                message=message,
                pin=pin,
                state_action=state_action,
            ),
        )
    except ValueError as error:
        raise click.UsageError(str(error)) from error
    _emit_lines(lines)


@queue.command("campaign-rename")
@DB_PATH_OPTION
@click.option("--old-topic", default=TOPIC_MARKETPLACE, show_default=True)
@click.option("--new-topic", default=CAMPAIGN_TOPIC_TITLE, show_default=True)
@click.option("--message", default=CAMPAIGN_MESSAGE, help="Message posted after the rename.")
def queue_campaign_rename(
    db_path: Path | None,
    old_topic: str,
    new_topic: str,
    message: str,
) -> None:
    """Rename a topic in every ecosystem and post a message into it."""

    _emit_lines(
        CONTROLLER.campaign_rename(
            CampaignRenameCommand(
                db_path=db_path,
                old_topic=old_topic,
                new_topic=new_topic,
                message=message,
            ),
        ),
    )


@queue.command("refresh-permissions")
@DB_PATH_OPTION
def queue_refresh_permissions(db_path: Path | None) -> None:
    """Enqueue a permission check for every ecosystem, two seconds apart."""

    _emit_lines(CONTROLLER.permission_refresh(DbCommand(db_path=db_path)))


@ecosystem_queue.group()
def dispatch() -> None:
    """Dispatch loop commands."""


@dispatch.command("cycle")
@DB_PATH_OPTION
@click.option(
    "--queue",
    "queue_name",
    type=QUEUE_CHOICE,
    default=QueueName.UNIFIED.value,
    show_default=True,
)
@click.option("--force", is_flag=True, help="Claim the oldest task even if it is not due yet.")
@click.option("--secret", default=None, envvar="ECOSYSTEM_QUEUE_TRIGGER_SECRET", help="Secret key.")
def dispatch_cycle(db_path: Path | None, queue_name: str, force: bool, secret: str | None) -> None:
    """Run one self-chaining dispatch cycle."""

    try:
        lines = CONTROLLER.dispatch_cycle(
            DispatchCycleCommand(db_path=db_path, queue=queue_name, force=force, secret=secret),
        )
    except SecretMismatchError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@dispatch.command("continuations")
@DB_PATH_OPTION
@click.option(
    "--max-rounds",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Follow immediately due continuations this many times.",
)
def dispatch_continuations(db_path: Path | None, max_rounds: int) -> None:
    """Run dispatch cycles for due continuations (cron entry point)."""

    _emit_lines(
        CONTROLLER.dispatch_continuations(
            DispatchContinuationsCommand(db_path=db_path, max_rounds=max_rounds),
        ),
    )


@dispatch.command("worker")
@DB_PATH_OPTION
@click.option(
    "--max-cycles",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many cycles (default: run until SIGINT/SIGTERM).",
)
def dispatch_worker(db_path: Path | None, max_cycles: int | None) -> None:
    """Run the persistent dispatcher draining every queue."""

    _emit_lines(
        CONTROLLER.dispatch_worker(DispatchWorkerCommand(db_path=db_path, max_cycles=max_cycles)),
    )


@ecosystem_queue.group()
def governor() -> None:
    """Global FloodWait commands."""


@governor.command("status")
@DB_PATH_OPTION
def governor_status(db_path: Path | None) -> None:
    """Show the current global wait."""

    _emit_lines(CONTROLLER.governor_status(DbCommand(db_path=db_path)))


@governor.command("set")
@DB_PATH_OPTION
@click.argument("seconds", type=click.IntRange(min=0))
@click.option("--reason", default=None, help="Recorded with the freeze.")
def governor_set(db_path: Path | None, seconds: int, reason: str | None) -> None:
    """Freeze dispatch for SECONDS (never shortens an active freeze)."""

    _emit_lines(
        CONTROLLER.governor_set(
            GovernorSetCommand(db_path=db_path, seconds=seconds, reason=reason),
        ),
    )


@governor.command("clear")
@DB_PATH_OPTION
def governor_clear(db_path: Path | None) -> None:
    """Lift the global wait immediately."""

    _emit_lines(CONTROLLER.governor_clear(DbCommand(db_path=db_path)))


@ecosystem_queue.group()
def ecosystems() -> None:
    """Provisioned ecosystem commands."""


@ecosystems.command("list")
@DB_PATH_OPTION
@click.option(
    "--status",
    type=click.Choice([status.value for status in EcosystemStatus]),
    default=None,
)
def ecosystems_list(db_path: Path | None, status: str | None) -> None:
    """List provisioned ecosystems."""

    _emit_lines(CONTROLLER.list_ecosystems(EcosystemsListCommand(db_path=db_path, status=status)))


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    ecosystem_queue()
