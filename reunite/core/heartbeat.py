"""
Heartbeat: periodic integrity self-checks.

Registered tasks run from a single cooperative loop whenever their interval
has elapsed. For an engine that means verifying the audit chain, writing a
ledger checkpoint and expiring stale consent approval requests. A task that
keeps failing is escalated to operators.
"""

import logging
import threading
import time
from typing import Callable, Dict, Optional

from util.logging import logger as structured_logger

from . import config
from .errors import OperationalAlerts

logger = logging.getLogger(__name__)

# name -> {func, interval, last_run, failures}
tasks: Dict[str, Dict] = {}
running = False
shutdown_event = None
alerts: Optional[OperationalAlerts] = None


def is_heartbeat_enabled() -> bool:
    return config.HEARTBEAT_ENABLED


def register_task(name: str, interval_sec: int, func: Callable):
    """
    Add (or replace) a periodic task.

    Args:
        name: Task name, unique within the loop
        interval_sec: Minimum seconds between runs
        func: Zero-argument callable; runs on the heartbeat thread
    """
    if not callable(func):
        raise ValueError(f"Task function must be callable: {func}")
    if interval_sec < 1:
        raise ValueError(f"Interval must be >= 1 second: {interval_sec}")

    tasks[name] = {"func": func, "interval": interval_sec, "last_run": None, "failures": 0}
    logger.info(f"Heartbeat task '{name}' scheduled every {interval_sec}s")


def unregister_task(name: str):
    if tasks.pop(name, None) is not None:
        logger.info(f"Heartbeat task '{name}' removed")


def list_tasks():
    return list(tasks)


def register_integrity_tasks(engine):
    """Schedule the engine's ledger verification, checkpoint and consent expiry tasks."""
    global alerts
    alerts = engine.alerts

    def verify_ledger():
        result = engine.verify_audit_chain()
        if not result.valid:
            # verify_chain has already latched and escalated the fault
            logger.critical(f"Heartbeat found audit chain broken at event {result.broken_at}")

    def expire_consent_requests():
        expired = engine.consent.expire_requests()
        if expired:
            logger.info(f"Expired {expired} consent approval requests")

    register_task("ledger_verify", config.LEDGER_VERIFY_INTERVAL_SEC, verify_ledger)
    register_task("ledger_checkpoint", config.CHECKPOINT_INTERVAL_SEC, engine.ledger.checkpoint)
    register_task("consent_expiry", config.CONSENT_EXPIRY_INTERVAL_SEC, expire_consent_requests)


def start():
    """Run the loop on the calling thread until stop() is called."""
    global running, shutdown_event

    if not is_heartbeat_enabled():
        logger.info("Heartbeat disabled (HEARTBEAT_ENABLED=false)")
        return
    if running:
        raise RuntimeError("Heartbeat already running")

    running = True
    shutdown_event = threading.Event()
    logger.info(f"Heartbeat started with tasks: {list_tasks()}")
    try:
        while running and not shutdown_event.is_set():
            run_due_tasks()
            shutdown_event.wait(0.1)
    finally:
        running = False
        logger.info("Heartbeat stopped")


def start_in_background() -> threading.Thread:
    thread = threading.Thread(target=start, name="heartbeat", daemon=True)
    thread.start()
    return thread


def stop():
    global running
    if not running:
        return
    running = False
    if shutdown_event:
        shutdown_event.set()


def run_due_tasks() -> int:
    """Run every due task; returns how many ran, failed ones included."""
    ran = 0
    for name, task_info in list(tasks.items()):
        if not should_run_task(name, task_info):
            continue
        ran += 1
        try:
            run_task(name, task_info)
        except RuntimeError as e:
            # One failing task must not starve the others
            logger.error(str(e))
    return ran


def should_run_task(name: str, task_info: Dict) -> bool:
    last_run = task_info["last_run"]
    return last_run is None or time.monotonic() - last_run >= task_info["interval"]


def run_task(name: str, task_info: Dict):
    """Run one task, record its timing and count consecutive failures."""
    started = time.monotonic()
    try:
        task_info["func"]()
    except Exception as e:
        finished = task_info["last_run"] = time.monotonic()
        task_info["failures"] = task_info.get("failures", 0) + 1
        structured_logger.log_heartbeat_task(name, started, finished, "error",
                                             {"error": str(e), "consecutive_failures": task_info["failures"]})
        if task_info["failures"] == config.HEARTBEAT_FAILURE_THRESHOLD and alerts is not None:
            alerts.escalate("heartbeat_failure", f"Heartbeat task '{name}' failed {task_info['failures']} times",
                            {"error": str(e)})
        raise RuntimeError(f"Task '{name}' failed after {finished - started:.2f}s: {e}") from e

    finished = task_info["last_run"] = time.monotonic()
    task_info["failures"] = 0
    structured_logger.log_heartbeat_task(name, started, finished)


def reset_task(name: str):
    """Make a task due on the next loop iteration."""
    if name in tasks:
        tasks[name]["last_run"] = None


def get_status():
    if not is_heartbeat_enabled():
        return {"status": "disabled", "reason": "HEARTBEAT_ENABLED=false"}

    status = {}
    for name, info in tasks.items():
        last_run = info["last_run"]
        status[name] = {
            "interval_sec": info["interval"],
            "last_run": last_run,
            "next_run": last_run + info["interval"] if last_run else None,
            "consecutive_failures": info.get("failures", 0),
        }
    return {"status": "running" if running else "stopped", "tasks": status}
