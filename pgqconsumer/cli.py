"""Command line for a consumer process.

    <prog> install|uninstall|check|create_queue|drop_queue|register|unregister
    <prog> failed | delete <event_id...|all> | retry <event_id...|all> | maint
    <prog> start|stop|kill|restart|status|reload|logmore|logless

start runs the consumer in the foreground; the other control commands
signal the process recorded in the pid file.
"""
import argparse
import os
import signal
import sys
import time
from typing import Callable, List, Optional

from pgqconsumer.adapters.pgq.client import failed
from pgqconsumer.config.settings import Settings
from pgqconsumer.consumers.engine import Consumer
from pgqconsumer.domain.models.events import InvalidOutcomeError
from pgqconsumer.utils.logging import configure_logging, setup_output
from pgqconsumer.workers.control import ConsumerControl, ConsumerKilled, install_signal_handlers
from pgqconsumer.workers.pidfile import PidFile
from pgqconsumer.workers.runner import run


EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_FATAL_IO = 2
EXIT_NOT_RUNNING = 4

ConsumerBuilder = Callable[[Settings], Consumer]

ADMIN_COMMANDS = ["install", "uninstall", "check", "create_queue", "drop_queue", "register", "unregister"]
SIGNAL_COMMANDS = {
    "stop": signal.SIGINT,
    "kill": signal.SIGTERM,
    "reload": signal.SIGHUP,
    "logmore": signal.SIGUSR1,
    "logless": signal.SIGUSR2,
}

log = configure_logging("cli")


class _Parser(argparse.ArgumentParser):
    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(EXIT_FAILURE, f"{self.prog}: error: {message}\n")


def _event_id(value: str):
    if value == "all":
        return value
    try:
        return int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an event id: {value!r}")


def build_parser(prog: Optional[str] = None) -> argparse.ArgumentParser:
    parser = _Parser(prog=prog, description="pgq queue consumer")
    commands = parser.add_subparsers(dest="command", metavar="command", parser_class=_Parser)
    commands.required = True

    for name in ADMIN_COMMANDS:
        commands.add_parser(name)
    commands.add_parser("failed", help="list failed events")
    for name in ("delete", "retry"):
        sub = commands.add_parser(name, help=f"{name} failed events")
        sub.add_argument("event_ids", nargs="+", type=_event_id, metavar="event_id|all")
    commands.add_parser("maint", help="move due retry events back to the queue")
    for name in ["start", "restart", "status", *SIGNAL_COMMANDS]:
        commands.add_parser(name)
    return parser


def pidfile_for(settings: Settings) -> PidFile:
    name = f"pgq-{settings.queue_name}-{settings.consumer_name}"
    if settings.subconsumer_name:
        name += f".{settings.subconsumer_name}"
    return PidFile(os.path.join(settings.pid_dir, f"{name}.pid"))


def run_cli(
    build: ConsumerBuilder,
    argv: Optional[List[str]] = None,
    settings_factory: Callable[[], Settings] = Settings,
) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    event_ids = getattr(args, "event_ids", None)
    if event_ids and "all" in event_ids and len(event_ids) > 1:
        parser.error("'all' cannot be combined with event ids")

    try:
        settings = settings_factory()
    except ValueError as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return EXIT_FAILURE

    pidfile = pidfile_for(settings)
    command = args.command

    if command in SIGNAL_COMMANDS:
        return _signal(pidfile, SIGNAL_COMMANDS[command])
    if command == "status":
        return _status(build, settings, pidfile)
    if command == "start":
        return _start(build, settings, pidfile, settings_factory)
    if command == "restart":
        code = _signal(pidfile, signal.SIGINT)
        if code != EXIT_OK:
            return code
        while pidfile.exists():
            time.sleep(1)
        return _start(build, settings, pidfile, settings_factory)

    setup_output(settings.log_level)
    if command in ADMIN_COMMANDS and pidfile.read() is not None:
        log.critical(f"Can not {command} a running consumer", extra={"pidfile": pidfile.path})
        return EXIT_FAILURE

    consumer = _build(build, settings)
    if consumer is None:
        return EXIT_FAILURE
    try:
        return _admin(consumer, command, args)
    finally:
        consumer.disconnect()


def _build(build: ConsumerBuilder, settings: Settings) -> Optional[Consumer]:
    try:
        return build(settings)
    except ValueError as exc:
        log.critical("Could not set up consumer", extra={"error": str(exc)})
        return None


def _admin(consumer: Consumer, command: str, args: argparse.Namespace) -> int:
    if command in ADMIN_COMMANDS:
        ok = getattr(consumer, command)()
    elif command == "failed":
        events = consumer.failed_events()
        ok = not failed(events)
        if ok and not events:
            log.warning("Failed event list is empty.")
        for event in events if ok else []:
            print(event)
    elif command == "delete":
        ok = consumer.delete_failed(args.event_ids)
    elif command == "retry":
        ok = consumer.retry_failed(args.event_ids)
    elif command == "maint":
        count = consumer.maint_retry_events()
        ok = not failed(count)
        if ok:
            print(f"{count} events moved back to the queue")
    else:
        raise ValueError(f"unknown command {command!r}")
    return EXIT_OK if ok else EXIT_FAILURE


def _signal(pidfile: PidFile, signum: int) -> int:
    pid = pidfile.read()
    if pid is None:
        print(f"No consumer running ({pidfile.path})", file=sys.stderr)
        return EXIT_NOT_RUNNING
    os.kill(pid, signum)
    return EXIT_OK


def _status(build: ConsumerBuilder, settings: Settings, pidfile: PidFile) -> int:
    pid = pidfile.read()
    if pid is None:
        print(f"Consumer {settings.consumer_name} is not running.")
        return EXIT_OK

    print(f"Consumer {settings.consumer_name} is running with pid {pid}")
    setup_output(settings.log_level)
    consumer = _build(build, settings)
    if consumer is None:
        return EXIT_OK
    try:
        info = consumer.consumer_info()
        consumers = consumer.queue_consumers()
    finally:
        consumer.disconnect()
    if info and not failed(info):
        for key, value in info.items():
            print(f"{key}: {value}")
    if consumers and not failed(consumers):
        print(f"Consumers on queue {settings.queue_name}:")
        for row in consumers:
            print(f"  {row.get('consumer_name')} lag={row.get('lag')} pending_events={row.get('pending_events')}")
    return EXIT_OK


def _start(
    build: ConsumerBuilder,
    settings: Settings,
    pidfile: PidFile,
    settings_factory: Callable[[], Settings],
) -> int:
    pid = pidfile.read()
    if pid is not None:
        print(f"Trying to start already running consumer [{pid}]", file=sys.stderr)
        return EXIT_FAILURE

    try:
        setup_output(settings.log_level, settings.log_file)
    except OSError as exc:
        print(f"FATAL: could not open logfile '{settings.log_file}': {exc}", file=sys.stderr)
        return EXIT_FATAL_IO

    consumer = _build(build, settings)
    if consumer is None:
        return EXIT_FAILURE
    if not consumer.check():
        consumer.disconnect()
        return EXIT_FAILURE

    try:
        pidfile.create()
    except OSError as exc:
        log.critical("Could not write pidfile", extra={"pidfile": pidfile.path, "error": str(exc)})
        consumer.disconnect()
        return EXIT_FATAL_IO

    control = ConsumerControl()
    install_signal_handlers(control)
    try:
        run(consumer, control, settings, reload=settings_factory)
    except ConsumerKilled:
        log.warning("Consumer killed, in-flight batch abandoned")
    except InvalidOutcomeError:
        log.critical("process_event returned an invalid outcome", exc_info=True)
        return EXIT_FAILURE
    except Exception:
        log.critical("Consumer stopped on error", exc_info=True)
        return EXIT_FAILURE
    finally:
        pidfile.remove()
    return EXIT_OK
