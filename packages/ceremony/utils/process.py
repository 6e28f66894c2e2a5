import logging
import os
import shutil
import subprocess
from pathlib import Path

from ..errors import ConfigurationError, SetupCommandFailed

logger = logging.getLogger(__name__)

MAX_OUTPUT = 4000


def require_tool(name: str, hint: str = "") -> str:
    """Resolve an executable on PATH or fail eagerly."""
    path = shutil.which(name)
    if not path:
        raise ConfigurationError(f"{name} not found on PATH", remedy=hint or None)
    return path


def run_command(
    cmd: list,
    cwd: Path | None = None,
    env: dict | None = None,
    timeout: float | None = None,
) -> subprocess.CompletedProcess:
    """Run a command, capturing output. The caller decides what a failure means."""
    args = [str(c) for c in cmd]
    run_env = None
    if env:
        run_env = os.environ.copy()
        run_env.update(env)
    logger.debug("running command", extra={"cmd": " ".join(args), "cwd": str(cwd) if cwd else None})
    try:
        return subprocess.run(
            args, cwd=cwd, env=run_env, capture_output=True, text=True, timeout=timeout, check=False
        )
    except FileNotFoundError as exc:
        raise ConfigurationError(f"command not found: {args[0]}") from exc


def check_command(cmd: list, describe: str, **kwargs) -> subprocess.CompletedProcess:
    proc = run_command(cmd, **kwargs)
    if proc.returncode != 0:
        output = ((proc.stdout or "") + (proc.stderr or ""))[-MAX_OUTPUT:]
        logger.error("command failed", extra={"describe": describe, "rc": proc.returncode, "output": output})
        raise SetupCommandFailed(f"{describe} failed (rc={proc.returncode})", proc.returncode, output)
    return proc
