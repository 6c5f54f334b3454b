import logging
import signal
import threading

from .engine import JobEngine

logger = logging.getLogger(__name__)

_stop = threading.Event()


def setup_signal_handlers():
    def _handler(signum, frame):
        logger.info("Received signal %s. Stopping job engine", signum)
        _stop.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            signal.signal(sig, _handler)
        except ValueError:
            # not the main thread; rely on request_stop()
            pass


def request_stop():
    _stop.set()


def run_worker(engine: JobEngine, poll: float = 0.5):
    """Run the engine's loops in the foreground until a signal or request_stop()."""
    setup_signal_handlers()
    _stop.clear()
    engine.start()
    try:
        while not _stop.is_set() and engine.running:
            _stop.wait(poll)
    finally:
        engine.stop()
