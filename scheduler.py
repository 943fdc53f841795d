#!/usr/bin/env python3
# scheduler.py — entry point. Run this on your VM. It runs forever.
#
# WHAT IT DOES:
#   One background thread per source pipeline:
#     1. Waits a short startup delay, then runs the pipeline once
#     2. Sleeps until the next wall-clock slot (GMT+7), like a cron line
#     3. Runs the pipeline again → repeats
#
# If an upstream or the store is down: the pipeline logs, reports failure, the job
# sleeps and tries again next slot — never crashes.
# If a run is still going when its next slot (or a manual trigger) arrives: that
# trigger is skipped, not queued.

import logging
import signal
import sys
import threading
import time
from datetime import datetime
from functools import partial

import db
import pipeline
from config import SCHEDULES, MAX_CONSECUTIVE_FAILURES, LOG_LEVEL, LOG_FILE
from timeutils import next_aligned_run

logger = logging.getLogger(__name__)


def setup_logging(level=LOG_LEVEL, log_file=LOG_FILE):
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, mode="a"))  # persistent log on VM
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=handlers,
    )


class PeriodicJob:
    """
    Runs `func` every `interval_sec`, first after `startup_delay_sec`.

    With aligned=True the period snaps to the GMT+7 wall clock (3600 → every :00),
    which is what the upstream call windows expect.
    offset_sec moves the slots off the boundary: (86400, offset 7200) runs daily at 02:00.
    run_now() is the only way the job runs, scheduled or manual, so the
    skip-if-busy guard covers both.
    """

    def __init__(self, name, func, interval_sec, startup_delay_sec=0, aligned=True, clock=time.time,
                 offset_sec=0):
        self.name = name
        self.func = func
        self.interval_sec = interval_sec
        self.startup_delay_sec = startup_delay_sec
        self.offset_sec = offset_sec
        self.aligned = aligned
        self.clock = clock
        self.consecutive_failures = 0
        self.last_result = None
        self._busy = threading.Lock()
        self._stop = threading.Event()
        self._thread = None

    def seconds_until_next(self):
        now = self.clock()
        if not self.aligned:
            return self.interval_sec
        return max(0.0, next_aligned_run(now, self.interval_sec, self.offset_sec) - now)

    def run_now(self):
        """Run once. Returns the pipeline result, or None when a run was already in progress."""
        if not self._busy.acquire(blocking=False):
            logger.warning(f"⏭️  {self.name}: previous run still in progress, skipping this trigger")
            return None
        try:
            started = time.time()
            try:
                result = self.func()
            except Exception as e:
                logger.error(f"❌ {self.name} raised: {e}", exc_info=True)
                result = {"success": False, "message": str(e), "stats": {"error": str(e)}}
            self._track(result, round(time.time() - started, 2))
            return result
        finally:
            self._busy.release()

    def _track(self, result, elapsed):
        self.last_result = result
        if result.get("success"):
            self.consecutive_failures = 0   # Reset on success
            logger.info(f"✅ {self.name}: {result.get('message')} ({elapsed}s)")
            return
        self.consecutive_failures += 1
        logger.error(
            f"❌ {self.name} failed (failure #{self.consecutive_failures}): {result.get('message')}"
        )
        if self.consecutive_failures >= MAX_CONSECUTIVE_FAILURES:
            logger.critical(
                f"🚨 {self.name}: {self.consecutive_failures} consecutive failures. "
                f"Check upstream availability and store connectivity."
            )

    def _loop(self):
        if self._stop.wait(self.startup_delay_sec):
            return
        self.run_now()
        while not self._stop.is_set():
            delay = self.seconds_until_next()
            logger.debug(f"{self.name}: sleeping {delay:.0f}s before next run")
            if self._stop.wait(delay):
                break
            self.run_now()

    def start(self):
        self._thread = threading.Thread(target=self._loop, name=f"job-{self.name}", daemon=True)
        self._thread.start()
        logger.info(f"  {self.name:<20} every {self.interval_sec}s, first run in {self.startup_delay_sec}s")

    def stop(self, timeout=None):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)

    @property
    def running(self):
        return self._busy.locked()


def pipeline_functions(tide_state):
    """name → zero-arg callable. The tide realtime state is owned here, not in pipeline.py."""
    return {
        "hodautieng":         pipeline.run_hodautieng,
        "reservoir_forecast": pipeline.run_reservoir_forecast,
        "tide_forecast":      pipeline.run_tide_forecast,
        "tide_realtime":      partial(pipeline.run_tide_realtime_all, tide_state),
        "binh_duong":         pipeline.run_stations,
        "tri_an":             pipeline.run_reservoir_table,
        "mekong":             pipeline.run_mekong,
        "forecast_cleanup":   pipeline.run_forecast_cleanup,
        "forecast_health":    pipeline.run_forecast_health,
    }


def build_jobs(tide_state=None, schedules=None):
    tide_state = tide_state or pipeline.TideRealtimeState()
    schedules = schedules or SCHEDULES
    funcs = pipeline_functions(tide_state)
    return [
        PeriodicJob(name, funcs[name], interval, delay, offset_sec=offset[0] if offset else 0)
        for name, (interval, delay, *offset) in schedules.items()
        if name in funcs
    ]


def main():
    setup_logging()

    logger.info("=" * 60)
    logger.info("  Hydrology telemetry ETL — scheduler starting")
    logger.info(f"  Start time    : {datetime.now().isoformat()}")
    logger.info("=" * 60)

    try:
        db.ping()
        logger.info("✅ MongoDB reachable")
    except Exception as e:
        # Jobs retry every slot; don't refuse to start just because the store is late
        logger.error(f"❌ MongoDB not reachable yet: {e}")

    jobs = build_jobs()
    for job in jobs:
        job.start()

    stopping = threading.Event()
    signal.signal(signal.SIGTERM, lambda *_: stopping.set())
    try:
        while not stopping.wait(1):
            pass
        logger.info("ETL stopped by SIGTERM")
    except KeyboardInterrupt:
        logger.info("ETL stopped by user (KeyboardInterrupt)")

    for job in jobs:
        job.stop(timeout=5)
    db.close()
    sys.exit(0)


if __name__ == "__main__":
    main()
