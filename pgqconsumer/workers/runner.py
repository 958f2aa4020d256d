from typing import Callable, Optional

from pgqconsumer.config.settings import Settings
from pgqconsumer.consumers.engine import Consumer
from pgqconsumer.utils.logging import configure_logging, setup_output
from pgqconsumer.workers.control import ConsumerControl


def run(
    consumer: Consumer,
    control: ConsumerControl,
    settings: Settings,
    reload: Optional[Callable[[], Settings]] = None,
) -> None:
    """Drain batches, sleep poll_interval_seconds when idle, until stopped.

    A stop request is seen between batches; the batch in flight finishes
    first. Reload requests re-read the settings before the next cycle.
    """
    log = configure_logging("runner")
    log.info(
        "Starting consumer",
        extra={"queue": consumer.identity.queue_name, "consumer": consumer.identity.qualified_name},
    )
    poll_interval = settings.poll_interval_seconds

    try:
        while not control.stop_requested:
            if control.take_reload() and reload is not None:
                poll_interval = _reload(reload, log, poll_interval)

            if not consumer.process(lambda: control.stop_requested):
                log.warning("Source connection lost, reconnecting")
                continue

            if not control.stop_requested:
                log.debug("Sleeping", extra={"seconds": poll_interval})
                control.wait(poll_interval)
    finally:
        consumer.disconnect()
        log.info("Consumer stopped", extra={"consumer": consumer.identity.qualified_name})


def _reload(reload: Callable[[], Settings], log, poll_interval: float) -> float:
    log.info("Reloading configuration")
    try:
        settings = reload()
        # Reopens the log file, which is what log rotation needs.
        setup_output(settings.log_level, settings.log_file)
    except (ValueError, OSError):
        log.exception("Reload failed, keeping current configuration")
        return poll_interval
    return settings.poll_interval_seconds
