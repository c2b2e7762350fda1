import logging
from dataclasses import dataclass
from typing import Optional

from codex_relay.config import Config
from codex_relay.domain.contracts import AgentRunner, Notifier
from codex_relay.events.event_bus import JobEventBus
from codex_relay.persistence.chat_job_store import ChatJobStore
from codex_relay.persistence.cron_store import ScheduledJobStore
from codex_relay.persistence.database import ConnectionRegistry, Database
from codex_relay.persistence.interaction_log import InteractionLog
from codex_relay.persistence.session_store import SessionRegistry
from codex_relay.providers.codex_cli import CodexCliRunner, resolve_codex_command
from codex_relay.services.chat_jobs import ChatJobQueue
from codex_relay.services.commands import CommandRouter
from codex_relay.services.cron_scheduler import CronScheduler
from codex_relay.services.notify import NullNotifier, TelegramNotifier
from codex_relay.services.prompt_runner import PromptRunner
from codex_relay.services.run_locks import SessionLocks
from codex_relay.services.session_files import CodexSessionFiles

logger = logging.getLogger(__name__)


@dataclass
class RelayServices:
    config: Config
    db: Database
    registry: SessionRegistry
    locks: SessionLocks
    interactions: InteractionLog
    prompt_runner: PromptRunner
    commands: CommandRouter
    cron_store: ScheduledJobStore
    scheduler: CronScheduler
    chat_jobs: ChatJobStore
    job_queue: ChatJobQueue
    events: JobEventBus


def build_services(
    config: Config,
    connections: Optional[ConnectionRegistry] = None,
    runner: Optional[AgentRunner] = None,
    notifier: Optional[Notifier] = None,
) -> RelayServices:
    """Wires every component around one shared database handle."""
    db = (connections or ConnectionRegistry()).open(config.db_path)
    logger.info("db_path=%s", db.path)

    registry = SessionRegistry(db, artifact_cleaner=CodexSessionFiles(config.codex_sessions_dir))
    registry.init()
    locks = SessionLocks()
    interactions = InteractionLog(db)
    if runner is None:
        runner = CodexCliRunner(
            command=_codex_command(config.codex_command),
            args_template=config.codex_args_template,
            node_options=config.codex_node_options,
        )
    prompt_runner = PromptRunner(
        registry,
        runner,
        locks,
        interactions=interactions,
        timeout_sec=config.codex_timeout_sec,
        workdir=config.codex_workdir,
    )
    cron_store = ScheduledJobStore(db)
    if notifier is None:
        if config.cron_notify_telegram and config.telegram_token:
            notifier = TelegramNotifier(config.telegram_token)
        else:
            notifier = NullNotifier()
    scheduler = CronScheduler(
        cron_store,
        registry,
        prompt_runner,
        notifier=notifier,
        poll_interval_sec=config.cron_poll_sec,
        notify_verbose=config.cron_notify_verbose,
        notify_max_chars=config.cron_notify_max_chars,
    )
    chat_jobs = ChatJobStore(db)
    events = JobEventBus()
    job_queue = ChatJobQueue(
        chat_jobs,
        registry,
        prompt_runner,
        events,
        concurrency=config.chat_job_concurrency,
        max_rows=config.chat_job_max_rows,
    )
    commands = CommandRouter(
        registry,
        prompt_runner,
        cron_store,
        interactions,
        default_tz=config.cron_default_tz,
        max_output_chars=config.max_output_chars,
    )
    return RelayServices(
        config=config,
        db=db,
        registry=registry,
        locks=locks,
        interactions=interactions,
        prompt_runner=prompt_runner,
        commands=commands,
        cron_store=cron_store,
        scheduler=scheduler,
        chat_jobs=chat_jobs,
        job_queue=job_queue,
        events=events,
    )


def _codex_command(configured: str) -> str:
    try:
        return resolve_codex_command(configured)
    except FileNotFoundError as exc:
        # Admin commands still work; agent runs will report the spawn failure.
        logger.warning("%s", exc)
        return "codex" if configured in ("", "auto") else configured
