"""Process-group helpers shared by the service manager and the stage runner.

Every child is spawned with ``start_new_session=True`` so its process group id
equals its pid. Signals are only ever sent to that group, never to processes
looked up by name.
"""

from __future__ import annotations

import contextlib
import os
import signal
import subprocess
import time

_GROUP_POLL_INTERVAL = 0.05


def _signal_group(process: subprocess.Popen[bytes], sig: signal.Signals) -> None:
    if hasattr(os, "killpg"):
        try:
            os.killpg(process.pid, sig)
            return
        except (ProcessLookupError, PermissionError):
            pass
    with contextlib.suppress(ProcessLookupError):
        if sig == signal.SIGTERM:
            process.terminate()
        else:
            process.kill()


def _group_alive(pgid: int) -> bool:
    if not hasattr(os, "killpg"):
        return False
    try:
        os.killpg(pgid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def terminate_process_group(process: subprocess.Popen[bytes], grace_seconds: float) -> int:
    """Stop a process and every other member of its group.

    Members are sent SIGTERM and get ``grace_seconds`` to exit before SIGKILL.
    This also applies when the leader has already exited: children it left
    behind in the group (browser drivers, backgrounded servers) are still
    terminated.

    Returns:
        The leader's return code.
    """
    _signal_group(process, signal.SIGTERM)
    try:
        process.wait(timeout=grace_seconds)
    except subprocess.TimeoutExpired:
        _signal_group(process, getattr(signal, "SIGKILL", signal.SIGTERM))
        process.wait()

    deadline = time.monotonic() + grace_seconds
    while _group_alive(process.pid) and time.monotonic() < deadline:
        time.sleep(_GROUP_POLL_INTERVAL)
    if _group_alive(process.pid):
        with contextlib.suppress(ProcessLookupError, PermissionError):
            os.killpg(process.pid, getattr(signal, "SIGKILL", signal.SIGTERM))
    return process.returncode
