"""
Overdue check worker.

Runs the overdue lifecycle on a fixed interval until SIGINT/SIGTERM. A
signal lets the record in hand finish and stops the run there.

    python -m keytrack.worker          # loop every CHECK_INTERVAL_SECONDS
    python -m keytrack.worker --once   # single pass
"""
import argparse
import logging
import signal
import threading
from typing import Callable, Optional

from keytrack.config import Settings, get_settings
from keytrack.database import Base, SessionLocal, engine
from keytrack.logger import configure_logging
from keytrack.services.lifecycle import OverdueLifecycleProcessor, RunInProgressError, RunResult
from keytrack.services.notifier import build_notifier
from keytrack.services.store import SqlAlchemyRecordStore

logger = logging.getLogger(__name__)


def run_once(
    settings: Settings,
    stop_event: Optional[threading.Event] = None,
    session_factory: Callable = SessionLocal
) -> Optional[RunResult]:
    """One pass with a fresh session. Returns None when the run could not happen."""
    db = session_factory()
    notifier = build_notifier(settings)
    try:
        processor = OverdueLifecycleProcessor(
            store=SqlAlchemyRecordStore(db),
            notifier=notifier,
            grace_period_days=settings.grace_period_days,
            escalation_threshold_days=settings.escalation_threshold_days
        )
        return processor.run(stop_event=stop_event)
    except RunInProgressError:
        logger.warning("Previous overdue check still running, skipping this tick")
        return None
    except Exception as e:
        # The processor has logged the traceback; the next tick tries again
        logger.warning("Overdue check pass failed", extra={"error": str(e)})
        return None
    finally:
        close = getattr(notifier, "close", None)
        if close is not None:
            close()
        db.close()


def run_forever(
    settings: Settings,
    stop_event: threading.Event,
    session_factory: Callable = SessionLocal
) -> int:
    """Run until stop_event is set. Returns the number of passes started."""
    passes = 0
    while not stop_event.is_set():
        passes += 1
        run_once(settings, stop_event=stop_event, session_factory=session_factory)
        stop_event.wait(settings.check_interval_seconds)
    logger.info("Worker shutdown", extra={"passes": passes})
    return passes


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(description="Run the overdue key check")
    parser.add_argument("--once", action="store_true", help="run a single pass and exit")
    args = parser.parse_args(argv)

    settings = get_settings()
    configure_logging(settings.log_level)
    Base.metadata.create_all(bind=engine)

    stop_event = threading.Event()

    def _request_stop(signum, frame):
        logger.info("Stop requested", extra={"signal": signum})
        stop_event.set()

    signal.signal(signal.SIGINT, _request_stop)
    signal.signal(signal.SIGTERM, _request_stop)

    if args.once:
        run_once(settings, stop_event=stop_event)
        return

    logger.info("Worker starting", extra={"interval_seconds": settings.check_interval_seconds})
    run_forever(settings, stop_event)


if __name__ == "__main__":
    main()
