import asyncio
import signal
import sys

from dotenv import load_dotenv

# before project imports: module loggers resolve MILESTONES_LOG_DIR on import
load_dotenv()

from core.milestones.errors import ConfigError, SourceUnavailable  # noqa: E402
from core.milestones.tracker import MilestoneTracker  # noqa: E402
from core.scheduler import MilestoneScheduler  # noqa: E402
from runtime.version import as_string  # noqa: E402
from services.slack.notifier import SlackNotifier  # noqa: E402
from services.warehouse.source import WarehouseSnapshotSource, create_warehouse_engine  # noqa: E402
from shared.config.milestones import load_milestone_config  # noqa: E402
from shared.logging.logger import get_logger  # noqa: E402
from shared.storage.milestone_store import MilestoneStore  # noqa: E402

log = get_logger("core.app")


def _verify_connections(source: WarehouseSnapshotSource, store: MilestoneStore) -> None:
    try:
        source.ping()
        log.info("Connected to warehouse database successfully")
    except SourceUnavailable as e:
        log.error(f"Warehouse connection error: {e}")

    try:
        store.ping()
        log.info("Connected to milestone database successfully")
    except Exception as e:
        log.error(f"Milestone database connection error: {e}")


async def main(stop_event: asyncio.Event) -> int:
    # --------------------------------------------------
    # ENV + CONFIG
    # --------------------------------------------------
    log.info("Environment variables loaded")
    log.info(f"{as_string()} booting")

    config = load_milestone_config()
    try:
        config.validate()
    except ConfigError as e:
        log.error(str(e))
        return 1

    # --------------------------------------------------
    # COLLABORATORS
    # --------------------------------------------------
    store = MilestoneStore(config.milestone_db_path)
    source = WarehouseSnapshotSource(
        create_warehouse_engine(config.warehouse_db_url),
        identity_field=config.identity_field,
    )
    notifier = SlackNotifier(
        config.slack_bot_token,
        config.slack_channel,
        dry_run=config.dry_run,
    )

    tracker = MilestoneTracker(
        source,
        store,
        notifier,
        concurrency=config.concurrency,
    )
    scheduler = MilestoneScheduler(
        tracker,
        interval_seconds=config.interval_seconds,
        cutoff_at=config.cutoff_at,
    )

    _verify_connections(source, store)

    # --------------------------------------------------
    # RUN UNTIL SHUTDOWN SIGNAL
    # --------------------------------------------------
    await scheduler.start()
    if scheduler.running:
        await stop_event.wait()
        log.info("Shutdown initiated")
    else:
        log.info("Nothing scheduled; exiting")

    # --------------------------------------------------
    # ORDERLY SHUTDOWN: LOOP FIRST, THEN CONNECTIONS
    # --------------------------------------------------
    try:
        await scheduler.shutdown()
    except Exception as e:
        log.warning(f"Scheduler shutdown error ignored: {e}")

    try:
        await notifier.aclose()
    except Exception as e:
        log.warning(f"Notifier close error ignored: {e}")

    source.dispose()

    log.info("Milestone runtime stopped")
    return 0


# ----------------------------------------------------------------------
# SIGNAL HANDLING
# ----------------------------------------------------------------------

def _install_signal_handlers(
    loop: asyncio.AbstractEventLoop,
    stop_event: asyncio.Event,
):
    def _handler(signum, frame):
        loop.call_soon_threadsafe(stop_event.set)

    try:
        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
    except ValueError:
        log.warning("Signal handlers not installed (not on main thread)")


# ----------------------------------------------------------------------
# ENTRYPOINT
# ----------------------------------------------------------------------

def run() -> int:
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    stop_event = asyncio.Event()
    _install_signal_handlers(loop, stop_event)

    exit_code = 0
    try:
        exit_code = loop.run_until_complete(main(stop_event))

    except KeyboardInterrupt:
        log.info("KeyboardInterrupt received; shutdown initiated")

    finally:
        pending = [t for t in asyncio.all_tasks(loop) if not t.done()]
        for task in pending:
            task.cancel()

        if pending:
            loop.run_until_complete(
                asyncio.gather(*pending, return_exceptions=True)
            )

        loop.run_until_complete(loop.shutdown_asyncgens())
        asyncio.set_event_loop(None)
        loop.close()

    return exit_code


if __name__ == "__main__":
    sys.exit(run())
