"""
Helmet Guard Monitor Runner - Standalone monitoring process for one device
Usage:
    python monitor_runner.py <device_id> [--db-url URL] [--webhook-url URL]
                             [--backfill-days N] [--poll-interval S] [--stdin]

With --stdin, each input line is a JSON feed message
{lat, lon, accX, accY, accZ, gyroX, gyroY, gyroZ, valid, timestamp};
the line 'cancel' cancels the pending accident event.
"""
import argparse
import json
import logging
import signal
import sys
import threading

from db.db_access import DB_CONFIG, HelmetDB
from helmet_system.coordinator.clock import CentralClock
from helmet_system.coordinator.config import EscalationConfig
from helmet_system.notifications import NotificationDispatcher
from helmet_system.pipeline import MonitoringPipeline

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(name)s: %(message)s'
)
logger = logging.getLogger('monitor_runner')


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description='Helmet Guard accident monitor')
    parser.add_argument('device_id', help='Device to monitor (e.g. helmet-01)')
    parser.add_argument('--db-url', default=DB_CONFIG['url'],
                        help='SQLAlchemy database URL')
    parser.add_argument('--webhook-url', default=None,
                        help='Notification endpoint (overrides HELMET_WEBHOOK_URL)')
    parser.add_argument('--backfill-days', type=int, default=0,
                        help='Days of history to warm up from (default: 0)')
    parser.add_argument('--poll-interval', type=float, default=0.5,
                        help='Seconds between store polls for new readings (default: 0.5)')
    parser.add_argument('--stdin', action='store_true',
                        help='Read feed messages from stdin instead of polling the store')
    parser.add_argument('--log-file', default=None,
                        help='Also write a debug log to this file')
    return parser.parse_args(argv)


def feed_from_stdin(pipeline: MonitoringPipeline, stop_event: threading.Event):
    """Forward JSON lines from stdin to the pipeline until EOF or stop."""
    for line in sys.stdin:
        if stop_event.is_set():
            break
        line = line.strip()
        if not line:
            continue
        if line == 'cancel':
            pipeline.cancel()
            continue
        try:
            message = json.loads(line)
        except json.JSONDecodeError as e:
            logger.warning(f"⚠ Ignoring non-JSON input: {e}")
            continue
        pipeline.publish(message)
    stop_event.set()


def main(argv=None):
    args = parse_args(argv)

    if args.log_file:
        fh = logging.FileHandler(args.log_file)
        fh.setLevel(logging.DEBUG)
        fh.setFormatter(logging.Formatter('%(asctime)s [%(levelname)s] %(name)s: %(message)s'))
        logging.getLogger().addHandler(fh)

    logger.info(f"Monitor runner starting for {args.device_id}")

    escalation_config = EscalationConfig.from_env()
    if args.webhook_url:
        escalation_config.webhook_url = args.webhook_url

    db = HelmetDB({'url': args.db_url})
    dispatcher = NotificationDispatcher.from_config(escalation_config)

    pipeline = MonitoringPipeline(
        device_id=args.device_id,
        db=db,
        dispatcher=dispatcher,
        clock=CentralClock(),
        escalation_config=escalation_config,
        backfill_days=args.backfill_days,
        poll_interval=None if args.stdin else args.poll_interval,
    )
    pipeline.subscribe_events(lambda record: logger.info(f"Event resolved: {record}"))

    stop_event = threading.Event()

    def shutdown(signum, frame):
        logger.info("Shutdown signal received — stopping pipeline...")
        stop_event.set()

    signal.signal(signal.SIGTERM, shutdown)
    signal.signal(signal.SIGINT, shutdown)

    pipeline.start()
    logger.info(f"✓ Monitoring {args.device_id}")

    if args.stdin:
        threading.Thread(target=feed_from_stdin, args=(pipeline, stop_event), daemon=True).start()

    # Keep alive until signal, reporting liveness
    was_stale = False
    while not stop_event.wait(1.0):
        stale = pipeline.collector.is_stale()
        if stale and not was_stale:
            logger.warning(f"⚠ No readings from {args.device_id} in "
                           f"{pipeline.sensor_config.stale_after_seconds}s — device disconnected?")
        elif was_stale and not stale:
            logger.info(f"✓ Readings from {args.device_id} resumed")
        was_stale = stale

    pipeline.stop()
    dispatcher.close()
    db.close()
    return 0


if __name__ == '__main__':
    sys.exit(main())
