"""
Subprocess agent runtime.

Launches each agent as a child process in its hook's worktree and appends
its output to <log_dir>/<hook_id>.log. The exit code is the completion
signal: wait() blocks until the agent exits.
"""

import logging
import os
import subprocess
from pathlib import Path

from gastown.adapters.protocols import CommandSpec
from gastown.lib.errors import InfrastructureError

logger = logging.getLogger(__name__)

STOP_GRACE_SECONDS = 10


class SubprocessAgentRuntime:
    def __init__(self, log_dir: Path):
        self.log_dir = log_dir

    def start(self, hook_id: str, command_spec: CommandSpec) -> subprocess.Popen:
        self.log_dir.mkdir(parents=True, exist_ok=True)
        log_path = self.log_dir / f"{hook_id}.log"
        env = {**os.environ, **command_spec.env}

        try:
            with open(log_path, "a") as log_file:
                log_file.write(f"=== COMMAND ===\n{' '.join(command_spec.argv)}\n\n")
                log_file.flush()
                process = subprocess.Popen(
                    command_spec.argv,
                    cwd=str(command_spec.cwd) if command_spec.cwd else None,
                    stdin=subprocess.PIPE if command_spec.stdin is not None else subprocess.DEVNULL,
                    stdout=log_file,
                    stderr=subprocess.STDOUT,
                    env=env,
                    text=True,
                    start_new_session=True,
                )
        except OSError as e:
            raise InfrastructureError(f"Failed to start agent for {hook_id}: {e}") from None

        if command_spec.stdin is not None:
            try:
                process.stdin.write(command_spec.stdin)
                process.stdin.close()
            except BrokenPipeError:
                logger.warning(f"[AGENT] {hook_id}: agent closed stdin before reading prompt")

        logger.info(f"[AGENT] {hook_id}: started pid {process.pid}")
        return process

    def stop(self, handle: subprocess.Popen) -> None:
        if handle.poll() is not None:
            return
        handle.terminate()
        try:
            handle.wait(timeout=STOP_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            logger.warning(f"[AGENT] pid {handle.pid} ignored SIGTERM, killing")
            handle.kill()
            handle.wait()

    def wait(self, handle: subprocess.Popen) -> int:
        return handle.wait()
