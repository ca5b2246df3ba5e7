from __future__ import annotations
from typing import (
    IO,
    Mapping,
)

import logging
import os
import pathlib
import shlex
import signal
import subprocess
import threading


logger = logging.getLogger(__name__)

_running: set[subprocess.Popen[bytes]] = set()
_running_lock = threading.Lock()

#: Seconds a cancelled process group gets between SIGTERM and SIGKILL.
TERMINATE_GRACE = 10.0


def cmd(
    *cmd: str | os.PathLike[str],
    cwd: str | pathlib.Path | None = None,
    env: Mapping[str, str] | None = None,
    output: IO[bytes] | None = None,
    errors_are_fatal: bool = True,
) -> int:
    """Run *cmd* to completion in its own process group.

    Combined stdout and stderr go to *output* when given.  If the wait is
    interrupted (e.g. by KeyboardInterrupt), the whole process group is
    terminated before the exception propagates.
    """
    str_cmd = [str(c) for c in cmd]
    cmd_line = shlex.join(str_cmd)
    if cwd is not None:
        logger.info(f"[{cwd}] {cmd_line}")
    else:
        logger.info(cmd_line)

    if output is not None:
        output.write(f"$ {cmd_line}\n".encode())
        output.flush()
        streams = {"stdout": output, "stderr": subprocess.STDOUT}
    else:
        streams = {}

    proc = subprocess.Popen(
        str_cmd,
        cwd=cwd,
        env=env,
        start_new_session=True,
        **streams,  # type: ignore[arg-type]
    )
    with _running_lock:
        _running.add(proc)
    try:
        returncode = proc.wait()
    except BaseException:
        terminate(proc)
        raise
    finally:
        with _running_lock:
            _running.discard(proc)

    if returncode != 0 and errors_are_fatal:
        logger.error(f"{cmd_line} failed with exit code {returncode}")
        raise subprocess.CalledProcessError(returncode, str_cmd)

    return returncode


def terminate(
    proc: subprocess.Popen[bytes],
    grace: float = TERMINATE_GRACE,
) -> None:
    try:
        os.killpg(proc.pid, signal.SIGTERM)
    except ProcessLookupError:
        return

    try:
        proc.wait(timeout=grace)
    except subprocess.TimeoutExpired:
        logger.warning(f"Process group {proc.pid} ignored SIGTERM, killing")
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        proc.wait()


def terminate_all(grace: float = TERMINATE_GRACE) -> None:
    """Terminate the process groups of all commands still running."""
    with _running_lock:
        procs = list(_running)
    for proc in procs:
        if proc.poll() is None:
            logger.info(f"Terminating process group {proc.pid}")
            terminate(proc, grace)
