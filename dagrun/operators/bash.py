"""
BashOperator - run a shell command in a subprocess.

The slot and run identifiers are exported to the command's environment
(DAGRUN_DS, DAGRUN_TS, DAGRUN_RUN_ID, ...). A cancellation request
terminates the process.
"""

import logging
import os
import subprocess
import time
from typing import Any

from dagrun.errors import Cancelled, PermanentError, TaskExecutionFailure, TaskSkipped
from dagrun.operators.base import Operator, TaskContext

logger = logging.getLogger(__name__)

# Exit code a command uses to mark its task skipped
DEFAULT_SKIP_EXIT_CODE = 99

_POLL_INTERVAL = 0.1


class BashOperator(Operator):
    """
    Operator that runs a bash command.

    Params:
        command: The command line (run with `bash -c`)
        env: Extra environment variables
        cwd: Working directory
        timeout: Seconds before the process is killed and the attempt fails
        skip_exit_code: Exit code that marks the task skipped (default 99)
    """

    def execute(self, context: TaskContext) -> Any:
        command = self.params.get("command")
        if not command:
            raise PermanentError(f"Task '{self.task_key}': bash operator needs a 'command' param")

        env = dict(os.environ)
        env.update({f"DAGRUN_{k.upper()}": v for k, v in context.template_vars.items()})
        env.update({str(k): str(v) for k, v in (self.params.get("env") or {}).items()})
        timeout = self.params.get("timeout")
        skip_exit_code = self.params.get("skip_exit_code", DEFAULT_SKIP_EXIT_CODE)

        logger.debug(f"Executing: {command}")
        process = subprocess.Popen(
            ["bash", "-c", command],
            cwd=self.params.get("cwd"),
            env=env,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
        )

        started = time.monotonic()
        while process.poll() is None:
            if context.cancel_event.wait(_POLL_INTERVAL):
                process.terminate()
                process.communicate()
                raise Cancelled(f"Task '{self.task_key}' was cancelled")
            if timeout is not None and time.monotonic() - started > float(timeout):
                process.kill()
                process.communicate()
                raise TaskExecutionFailure(f"Command timed out after {timeout}s")

        stdout, stderr = process.communicate()
        if stdout:
            logger.debug(f"Command output: {stdout[:500]}")

        if process.returncode == skip_exit_code:
            raise TaskSkipped(f"Command exited with {skip_exit_code}")
        if process.returncode != 0:
            error_msg = f"Command failed with exit code {process.returncode}"
            if stderr:
                error_msg += f": {stderr[:500]}"
            raise TaskExecutionFailure(error_msg)

        return stdout.rstrip("\n")
