"""
Desktop notifications for Gas Town, sent through notify-send.

The orchestrator only calls these when NOTIFY=true in town.env. Missing
notify-send or a failing daemon never interrupts a patrol.
"""

import logging
import shutil
import subprocess

logger = logging.getLogger(__name__)

APP_NAME = "Gas Town"
URGENCIES = {"low", "normal", "critical"}
BODY_LIMIT = 200
SEND_TIMEOUT = 5


def _clip(body: str) -> str:
    return body if len(body) <= BODY_LIMIT else body[:BODY_LIMIT] + "..."


def notify(title: str, message: str, urgency: str = "normal") -> bool:
    """Show a notification. Returns True if notify-send accepted it."""
    if urgency not in URGENCIES:
        logger.warning(f"[notify] Unknown urgency {urgency!r}; sending as normal")
        urgency = "normal"

    binary = shutil.which("notify-send")
    if binary is None:
        logger.debug("[notify] notify-send not on PATH")
        return False

    cmd = [binary, f"--urgency={urgency}", f"--app-name={APP_NAME}", title, _clip(message)]
    try:
        proc = subprocess.run(cmd, capture_output=True, text=True, timeout=SEND_TIMEOUT)
    except (subprocess.TimeoutExpired, OSError) as e:
        logger.warning(f"[notify] notify-send did not run: {e}")
        return False

    if proc.returncode:
        logger.warning(f"[notify] notify-send exited {proc.returncode}: {proc.stderr.strip()}")
        return False
    return True


def notify_molecule_done(molecule_id: str, formula_name: str) -> bool:
    return notify(f"{APP_NAME}: {molecule_id}", f"{formula_name} finished", "low")


def notify_molecule_failed(molecule_id: str, step: str) -> bool:
    return notify(f"{APP_NAME}: {molecule_id}", f"Step {step} failed", "critical")


def notify_needs_repair(hook_id: str, reason: str) -> bool:
    """A hook ran out of automatic repairs; `gt hook repair` is next."""
    return notify(f"{APP_NAME}: {hook_id}", f"Needs repair: {reason}", "critical")
