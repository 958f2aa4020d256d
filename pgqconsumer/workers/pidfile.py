import os
from typing import Optional

from pgqconsumer.utils.logging import configure_logging


class PidFile:
    """Pid of the running consumer, used by the control commands."""

    def __init__(self, path: str):
        self.path = path
        self.log = configure_logging("pidfile")

    def read(self) -> Optional[int]:
        """Pid of a live process, or None. Stale files are removed."""
        try:
            with open(self.path) as handle:
                pid = int(handle.read().strip())
        except FileNotFoundError:
            return None
        except ValueError:
            self.log.warning("Unreadable pidfile, removing", extra={"pidfile": self.path})
            self.remove()
            return None

        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            self.log.info("Stale pidfile, removing", extra={"pidfile": self.path, "pid": pid})
            self.remove()
            return None
        except PermissionError:
            pass
        return pid

    def create(self) -> None:
        """Write our pid; raises OSError when the file cannot be written."""
        if os.path.exists(self.path):
            self.log.error("Pidfile already exists", extra={"pidfile": self.path})
        with open(self.path, "w") as handle:
            handle.write(str(os.getpid()))
        self.log.info("Pidfile created", extra={"pidfile": self.path, "pid": os.getpid()})

    def remove(self) -> None:
        try:
            os.unlink(self.path)
        except FileNotFoundError:
            self.log.error("Pidfile does not exist", extra={"pidfile": self.path})
        except OSError as exc:
            self.log.error("Could not remove pidfile", extra={"pidfile": self.path, "error": str(exc)})

    def exists(self) -> bool:
        return os.path.exists(self.path)
