"""
Workflow Resume Worker

Polls for waiting workflow executions whose wait has elapsed and resumes them.
Run it alongside the API unless RESUME_POLLING_IN_API is set.

Usage:
    python worker.py
"""

import logging
import signal
import time

from sqlalchemy.orm import Session

from config import settings, setup_logging
from database import SessionLocal, init_db
from workflows.resumer import resume_waiting

# Setup logging
logger, _ = setup_logging()
logger = logging.getLogger(__name__)

# Configuration
POLL_INTERVAL_SECONDS = settings.RESUME_POLL_INTERVAL_SECONDS

shutdown_requested = False


def signal_handler(signum, frame):
    """Handle shutdown signals gracefully."""
    global shutdown_requested
    logger.info(f"Received signal {signum}, initiating graceful shutdown...")
    shutdown_requested = True


def get_db() -> Session:
    """Get a database session."""
    return SessionLocal()


def run_cycle(db: Session) -> int:
    """Resume every due waiting execution. Returns how many were resumed."""
    result = resume_waiting(db)
    if result["resumedCount"] or result["errors"]:
        logger.info(result["message"])
    for error in result["errors"]:
        logger.warning(f"Execution {error['executionId']} failed to resume: {error['error']}")
    return result["resumedCount"]


def poll_database():
    """Poll the database for due waiting executions."""
    logger.info("Starting database polling mode")

    while not shutdown_requested:
        db = get_db()
        try:
            run_cycle(db)
        except Exception as e:
            logger.error(f"Error in poll cycle: {e}", exc_info=True)
        finally:
            db.close()

        # Wait before next poll
        for _ in range(POLL_INTERVAL_SECONDS):
            if shutdown_requested:
                break
            time.sleep(1)


def main():
    """Main worker entry point."""
    logger.info("=" * 60)
    logger.info("Workflow Resume Worker Starting")
    logger.info("=" * 60)

    # Register signal handlers
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    # Initialize database
    init_db()
    logger.info("Database initialized")

    logger.info(f"Using database polling (interval: {POLL_INTERVAL_SECONDS}s)")
    poll_database()

    logger.info("Worker shutdown complete")


if __name__ == "__main__":
    main()
