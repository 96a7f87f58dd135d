"""Execution of a single verification stage as an isolated subprocess."""

from __future__ import annotations

import os
import subprocess
import time
from typing import TYPE_CHECKING

from qaplaybook.observability.logging import get_logger
from qaplaybook.pipeline.process import terminate_process_group
from qaplaybook.pipeline.stages import StageOutcome

if TYPE_CHECKING:
    from qaplaybook.pipeline.context import ExecutionContext
    from qaplaybook.pipeline.stages import Stage

log = get_logger(__name__)

# Same codes the shell uses for `timeout` and "command not found"
TIMEOUT_EXIT_CODE = 124
SPAWN_FAILURE_EXIT_CODE = 127

DEFAULT_KILL_GRACE = 5.0


class StageRunner:
    """Run a stage command and report how it terminated.

    The runner never interprets the stage's artifacts. It only guarantees
    that the process (and its process group) has terminated before
    ``run`` returns, and that the stage log holds everything it printed.
    """

    def __init__(self, *, kill_grace: float = DEFAULT_KILL_GRACE) -> None:
        self._kill_grace = kill_grace

    def run(self, stage: Stage, context: ExecutionContext) -> StageOutcome:
        """Execute a stage to completion.

        Args:
            stage: Stage to execute.
            context: Run context providing mode, seed and service URLs.

        Returns:
            StageOutcome with the exit code (synthetic on timeout or spawn
            failure) and the captured log text.
        """
        if stage.artifact_path is not None:
            # A leftover report from a previous run must not be credited to this one
            stage.artifact_path.unlink(missing_ok=True)
        stage.log_path.parent.mkdir(parents=True, exist_ok=True)

        command = stage.command_for(context.mode)
        env = {**os.environ, **context.stage_env(), **stage.env}
        timed_out = False
        start_time = time.perf_counter()
        log.info("stage_start", stage=stage.name, command=" ".join(command), mode=context.mode)

        with stage.log_path.open("w", encoding="utf-8") as log_file:
            try:
                process = subprocess.Popen(
                    list(command),
                    stdout=log_file,
                    stderr=subprocess.STDOUT,
                    stdin=subprocess.DEVNULL,
                    cwd=stage.cwd or context.project_path,
                    env=env,
                    start_new_session=True,
                )
            except OSError as e:
                log_file.write(f"[qa-playbook] failed to start {command[0]}: {e}\n")
                exit_code = SPAWN_FAILURE_EXIT_CODE
                log.error("stage_spawn_failed", stage=stage.name, error=str(e))
            else:
                try:
                    exit_code = process.wait(timeout=stage.timeout_seconds)
                except subprocess.TimeoutExpired:
                    terminate_process_group(process, self._kill_grace)
                    timed_out = True
                    exit_code = TIMEOUT_EXIT_CODE
                    log_file.write(
                        f"\n[qa-playbook] stage timed out after {stage.timeout_seconds:g}s\n"
                    )
                    log.warning("stage_timeout", stage=stage.name, timeout=stage.timeout_seconds)
                else:
                    # Leftover group members must not outlive the stage or keep writing its log
                    terminate_process_group(process, self._kill_grace)

        duration = time.perf_counter() - start_time
        captured = stage.log_path.read_text(encoding="utf-8", errors="replace")

        log.info(
            "stage_complete",
            stage=stage.name,
            exit_code=exit_code,
            timed_out=timed_out,
            duration=f"{duration:.2f}s",
        )
        return StageOutcome(
            stage=stage.name,
            exit_code=exit_code,
            captured_output=captured,
            timed_out=timed_out,
            duration_seconds=duration,
        )
