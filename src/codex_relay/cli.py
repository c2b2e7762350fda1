import argparse
import asyncio
import logging
import os
import shlex
import signal
import sys
from pathlib import Path
from typing import List, Optional

from codex_relay.app_container import RelayServices, build_services
from codex_relay.config import (
    ALLOWLIST_KEY,
    DEFAULT_CONFIG_DIR,
    TOKEN_KEY,
    Config,
    apply_env_defaults,
    get_env_path,
    get_env_value,
    load_config,
    load_env_with_fallback,
    parse_allowlist,
)
from codex_relay.domain.errors import RelayError
from codex_relay.domain.sessions import Channel
from codex_relay.services.crash_log import CrashLog, review_pending_crashes
from codex_relay.services.process_lock import ProcessLock, ProcessLockError
from codex_relay.services.slot_bindings import read_bindings_file, write_bindings_file
from codex_relay.util import format_run_output

logger = logging.getLogger(__name__)

LOCAL_CHAT_ID = "local-cli"
CRASH_LOG_NAME = "crash_log.json"


def _configure_logging(level: str) -> None:
    level = (level or "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _print_config(config_dir: Path, config: Config) -> None:
    env_file = load_env_with_fallback(config_dir)
    token = get_env_value(TOKEN_KEY, env_file)
    allowlist = parse_allowlist(get_env_value(ALLOWLIST_KEY, env_file))

    print(f"Config dir: {config_dir}")
    print(f"Env file: {get_env_path(config_dir)}")
    print(f"Token present: {'yes' if token else 'no'}")
    print(f"Allowlist active: {'yes' if allowlist else 'no'}")
    if allowlist:
        print(f"Allowlist count: {len(allowlist)}")
    for key, value in sorted(config.redacted().items()):
        print(f"{key}={value}")


def _default_chat_id(config: Config) -> str:
    if config.allowed_chat_ids:
        return sorted(config.allowed_chat_ids)[0]
    return LOCAL_CHAT_ID


def _lock_for(config: Config, name: str) -> ProcessLock:
    return ProcessLock(config.config_dir / f"{name}.lock", label=name)


# ----------------------------------------------------------------------
# telegram
# ----------------------------------------------------------------------


def _run_telegram(services: RelayServices) -> int:
    from codex_relay.telegram_bot import build_application

    config = services.config
    if not config.telegram_token:
        print(f"{TOKEN_KEY} is not set. Add it to {config.env_path}.", file=sys.stderr)
        return 2

    crash_log = CrashLog(config.config_dir / CRASH_LOG_NAME)

    async def _post_init(application) -> None:
        if config.crash_review_slot:
            application.create_task(_review_crashes(services, crash_log))

    app = build_application(
        config.telegram_token,
        services.commands,
        allowed_chat_ids=config.allowed_chat_ids,
        crash_log=crash_log,
        post_init=_post_init,
    )
    with _lock_for(config, "telegram"):
        app.run_polling(close_loop=False)
    return 0


async def _review_crashes(services: RelayServices, crash_log: CrashLog) -> None:
    config = services.config
    chat_id = _default_chat_id(config)

    async def _review(prompt: str) -> None:
        session = services.registry.ensure_session_for_target(chat_id, config.crash_review_slot)
        await services.prompt_runner.run(session, prompt, Channel.BOT, input_label="[crash-review]")

    try:
        count = await review_pending_crashes(crash_log, _review)
    except RelayError as exc:
        logger.warning("crash review skipped: %s", exc)
        return
    except Exception:
        logger.exception("crash review failed")
        return
    if count:
        logger.info("sent %s crash record(s) for review to slot %s", count, config.crash_review_slot)


# ----------------------------------------------------------------------
# web
# ----------------------------------------------------------------------


def _run_web(services: RelayServices, host: str, port: int, log_level: str) -> int:
    from codex_relay.control_center.app import create_app
    import uvicorn

    app = create_app(services)
    uvicorn.run(app, host=host, port=port, log_level=log_level.lower())
    return 0


# ----------------------------------------------------------------------
# cron-worker
# ----------------------------------------------------------------------


async def _cron_worker(services: RelayServices) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            pass
    await services.scheduler.start()
    try:
        await stop.wait()
    finally:
        await services.scheduler.stop()
        logger.info("cron worker stopped")


def _run_cron_worker(services: RelayServices) -> int:
    with _lock_for(services.config, "cron-worker"):
        asyncio.run(_cron_worker(services))
    return 0


# ----------------------------------------------------------------------
# chat / once
# ----------------------------------------------------------------------


async def _chat_loop(services: RelayServices, chat_id: str) -> None:
    router = services.commands
    session = router.current_session(chat_id, Channel.TERMINAL)
    print(f"chat={chat_id} slot={session.slot}. Type :help for commands, :quit to exit.")
    while True:
        try:
            line = await asyncio.to_thread(input, "> ")
        except EOFError:
            print()
            return
        line = line.strip()
        if not line:
            continue
        if line in (":quit", ":exit", "/quit", "/exit"):
            return
        reply = await router.handle(chat_id, Channel.TERMINAL, line)
        print(reply.text)


async def _once(services: RelayServices, chat_id: str, target: str, prompt: str) -> int:
    registry = services.registry
    if target:
        session = registry.ensure_session_for_target(chat_id, target)
    else:
        session = registry.get_or_create_active_session(chat_id, Channel.TERMINAL)
    outcome = await services.prompt_runner.run(session, prompt, Channel.TERMINAL)
    result = outcome.result
    if result.output:
        print(result.output)
    if result.error:
        print(result.error, file=sys.stderr)
    if result.ok:
        return 0
    return result.exit_code if result.exit_code else 1


# ----------------------------------------------------------------------
# cron / slots admin
# ----------------------------------------------------------------------


def _cron_line(args: argparse.Namespace) -> str:
    parts: List[str] = ["/cron", args.cron_command]
    if args.cron_command in ("add", "once"):
        parts += ["--session", args.session, "--prompt", args.prompt]
        if args.cron_command == "add":
            parts += ["--cron", args.cron]
        else:
            parts += ["--at", args.at]
        if args.tz:
            parts += ["--tz", args.tz]
    elif args.cron_command in ("remove", "enable", "disable"):
        parts.append(args.job_id)
    return " ".join(shlex.quote(p) for p in parts)


async def _cron_admin(services: RelayServices, chat_id: str, args: argparse.Namespace) -> int:
    reply = await services.commands.handle_command(chat_id, Channel.TERMINAL, _cron_line(args))
    if reply.failed:
        print(reply.text, file=sys.stderr)
        return 1
    print(reply.text)
    return 0


def _slots_admin(services: RelayServices, chat_id: str, args: argparse.Namespace) -> int:
    registry = services.registry
    if args.slots_command == "list":
        rows = registry.list_slot_bindings(chat_id)
        if not rows:
            print("No slots found.")
        for row in rows:
            print(f"{row.slot} | session={row.session_id} | continuation={row.continuation_token or '-'}")
        return 0
    if args.slots_command == "bind":
        bound = registry.bind_continuation(chat_id, args.slot, args.token)
        print(f"Bound {bound.slot} -> {bound.continuation_token} ({bound.id})")
        return 0
    if args.slots_command == "export":
        count = write_bindings_file(registry, chat_id, Path(args.file))
        print(f"Exported {count} binding(s) to {args.file}")
        return 0
    report = read_bindings_file(registry, Path(args.file), chat_id=args.chat)
    print(f"Imported {report.applied} binding(s) for chat {report.chat_id}")
    for reason in report.skipped:
        print(f"skipped: {reason}")
    return 0


# ----------------------------------------------------------------------
# entry point
# ----------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Relay chat front-ends to codex CLI sessions")
    parser.add_argument(
        "--config-dir",
        default=str(DEFAULT_CONFIG_DIR),
        help="Directory holding .env and relay.db (default: ~/.config/codex-relay)",
    )
    parser.add_argument("--print-config", action="store_true", help="Print active config summary")
    parser.add_argument("--log-level", default=os.environ.get("LOG_LEVEL", "INFO"))

    sub = parser.add_subparsers(dest="command")
    sub.add_parser("telegram", help="Run the Telegram bot (long polling)")

    web = sub.add_parser("web", help="Run the Control Center HTTP API")
    web.add_argument("--host", default="127.0.0.1", help="Control Center bind host")
    web.add_argument("--port", type=int, default=8765, help="Control Center bind port")

    sub.add_parser("cron-worker", help="Run the scheduled job loop")

    chat = sub.add_parser("chat", help="Interactive terminal session")
    chat.add_argument("--chat", default="", help="Chat id (default: first allowed chat id)")

    once = sub.add_parser("once", help="Run a single prompt and exit with its exit code")
    once.add_argument("--chat", default="", help="Chat id (default: first allowed chat id)")
    once.add_argument("--session", default="", help="Target slot, session id or prefix")
    once.add_argument("prompt", nargs="+")

    cron = sub.add_parser("cron", help="Manage scheduled jobs")
    cron.add_argument("--chat", default="", help="Chat id (default: first allowed chat id)")
    cron_sub = cron.add_subparsers(dest="cron_command", required=True)
    cron_sub.add_parser("list")
    for name, when_flag in (("add", "--cron"), ("once", "--at")):
        p = cron_sub.add_parser(name)
        p.add_argument("--session", required=True)
        p.add_argument(when_flag, required=True)
        p.add_argument("--prompt", required=True)
        p.add_argument("--tz", default="")
    for name in ("remove", "enable", "disable"):
        cron_sub.add_parser(name).add_argument("job_id")

    slots = sub.add_parser("slots", help="Inspect and move slot bindings")
    slots.add_argument("--chat", default="", help="Chat id (default: first allowed chat id)")
    slots_sub = slots.add_subparsers(dest="slots_command", required=True)
    slots_sub.add_parser("list")
    bind = slots_sub.add_parser("bind")
    bind.add_argument("slot")
    bind.add_argument("token")
    slots_sub.add_parser("export").add_argument("file")
    slots_sub.add_parser("import").add_argument("file")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    config_dir = Path(args.config_dir).expanduser().resolve()

    _configure_logging(args.log_level)
    apply_env_defaults(load_env_with_fallback(config_dir))
    config = load_config(config_dir)

    if args.print_config:
        _print_config(config_dir, config)
        return 0
    if not args.command:
        parser.print_help()
        return 2

    services = build_services(config)
    chat_id = getattr(args, "chat", "") or _default_chat_id(config)
    try:
        if args.command == "telegram":
            return _run_telegram(services)
        if args.command == "web":
            return _run_web(services, args.host, args.port, args.log_level)
        if args.command == "cron-worker":
            return _run_cron_worker(services)
        if args.command == "chat":
            asyncio.run(_chat_loop(services, chat_id))
            return 0
        if args.command == "once":
            return asyncio.run(_once(services, chat_id, args.session, " ".join(args.prompt)))
        if args.command == "cron":
            return asyncio.run(_cron_admin(services, chat_id, args))
        return _slots_admin(services, chat_id, args)
    except ProcessLockError as exc:
        print(str(exc), file=sys.stderr)
        return 1
    except RelayError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130
    finally:
        services.db.close()


if __name__ == "__main__":
    sys.exit(main())
