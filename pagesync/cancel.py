import threading

from .errors import Superseded


class CancelToken:
    """Cancellation flag shared by every stage of one build job.

    Subprocesses started for the job are attached to the token so that
    cancelling it also kills whatever is still running.
    """

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._processes = []

    @property
    def cancelled(self):
        return self._event.is_set()

    def cancel(self):
        with self._lock:
            self._event.set()
            processes = list(self._processes)
        for proc in processes:
            _kill(proc)

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise Superseded("build was superseded by a newer change")

    def attach(self, proc):
        with self._lock:
            if self._event.is_set():
                already_cancelled = True
            else:
                already_cancelled = False
                self._processes.append(proc)
        if already_cancelled:
            _kill(proc)
            raise Superseded("build was superseded by a newer change")

    def detach(self, proc):
        with self._lock:
            if proc in self._processes:
                self._processes.remove(proc)

    def wait(self, timeout=None):
        return self._event.wait(timeout)


def _kill(proc):
    # the process may already have exited between the check and the kill
    if proc.poll() is None:
        try:
            proc.kill()
        except OSError:
            pass
