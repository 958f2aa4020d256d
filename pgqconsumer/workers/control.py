import signal
import threading

from pgqconsumer.utils.logging import configure_logging, log_less, log_more


log = configure_logging("control")


class ConsumerKilled(BaseException):
    """Raised from the TERM handler to abandon the batch in flight."""


class ConsumerControl:
    """Flags the run loop looks at between acquire cycles."""

    def __init__(self):
        self._stop = threading.Event()
        self._reload = False

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    def request_stop(self) -> None:
        self._stop.set()

    def request_reload(self) -> None:
        self._reload = True

    def take_reload(self) -> bool:
        reload, self._reload = self._reload, False
        return reload

    def wait(self, seconds: float) -> bool:
        """Sleep up to seconds; returns early (True) on a stop request."""
        return self._stop.wait(seconds)


def install_signal_handlers(control: ConsumerControl) -> None:
    """INT stops after the current batch, TERM abandons it, HUP reloads,
    USR1/USR2 log more/less."""

    def on_int(signum, frame):
        log.warning("Received INT signal")
        control.request_stop()

    def on_term(signum, frame):
        log.warning("Received TERM signal")
        control.request_stop()
        raise ConsumerKilled()

    def on_hup(signum, frame):
        log.warning("Received HUP signal")
        control.request_reload()

    def on_usr1(signum, frame):
        log.warning("Received USR1 signal, logging more")
        log_more()

    def on_usr2(signum, frame):
        log.warning("Received USR2 signal, logging less")
        log_less()

    signal.signal(signal.SIGINT, on_int)
    signal.signal(signal.SIGTERM, on_term)
    signal.signal(signal.SIGHUP, on_hup)
    signal.signal(signal.SIGUSR1, on_usr1)
    signal.signal(signal.SIGUSR2, on_usr2)
