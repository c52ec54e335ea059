"""Subprocess helpers shared by the compile, render and format stages."""

import logging
import shutil
import subprocess
import time

from .errors import StageFailure, Superseded, ToolNotFoundError

logger = logging.getLogger(__name__)


def fill_command(template, **values):
    """Substitute ``{name}`` placeholders in every argument of ``template``."""
    return [arg.format(**values) for arg in template]


def ensure_tool(name):
    if shutil.which(name) is None:
        raise ToolNotFoundError(
            f"'{name}' is required but was not found on your PATH."
        )


def run_command(
    args,
    cwd=None,
    timeout=None,
    token=None,
    failure=StageFailure,
    check=True,
):
    """Run ``args`` and return a ``CompletedProcess`` with combined output.

    The process is attached to ``token`` while it runs, so a cancelled job
    kills it. A cancelled run raises :class:`Superseded` whatever the exit
    status; a non-zero exit raises ``failure`` when ``check`` is set.
    """
    if token is not None:
        token.raise_if_cancelled()
    logger.debug("running: %s", " ".join(args))
    start = time.time()
    try:
        proc = subprocess.Popen(
            args,
            cwd=cwd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            stdin=subprocess.DEVNULL,
            text=True,
            errors="replace",
        )
    except FileNotFoundError as e:
        raise ToolNotFoundError(
            f"'{args[0]}' is required but was not found on your PATH."
        ) from e
    if token is not None:
        try:
            token.attach(proc)
        except Superseded:
            # attach killed it; reap it
            proc.communicate()
            raise
    try:
        try:
            output, _ = proc.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            proc.kill()
            output, _ = proc.communicate()
            raise failure(
                f"{args[0]} timed out after {timeout:.0f}s", output or ""
            )
    finally:
        if token is not None:
            token.detach(proc)
    output = output or ""
    logger.debug(
        "%s exited with %s after %.1fs",
        args[0],
        proc.returncode,
        time.time() - start,
    )
    if token is not None and token.cancelled:
        raise Superseded(f"{args[0]} was killed by a newer build")
    result = subprocess.CompletedProcess(args, proc.returncode, output)
    if check and proc.returncode != 0:
        last_line = output.strip().splitlines()[-1:] or [""]
        raise failure(
            f"{args[0]} exited with status {proc.returncode}: {last_line[0]}",
            output,
        )
    return result
