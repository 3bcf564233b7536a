"""
Host collaborators: bounded subprocess execution, wall clock and filesystem.
"""

import os
import subprocess
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Sequence

import structlog

from src.common.errors import CommandTimeoutError, ExternalCommandError
from src.common.models import utcnow

logger = structlog.get_logger()


@dataclass
class CommandResult:
    """Finished external command."""
    args: List[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandExecutor:
    """Runs external commands with a timeout."""

    def __init__(self, timeout: float = 10.0):
        """
        Initialize executor.

        Args:
            timeout: Default timeout in seconds for every command
        """
        self.timeout = timeout

    def run(
        self,
        args: Sequence[str],
        input: Optional[str] = None,
        timeout: Optional[float] = None,
        check: bool = True
    ) -> CommandResult:
        """
        Run a command and capture its output.

        Args:
            args: Command line
            input: Text written to the command's stdin
            timeout: Override of the default timeout
            check: Raise on a non-zero exit status

        Returns:
            Command result

        Raises:
            CommandTimeoutError: If the command did not finish in time
            ExternalCommandError: If the command is missing or, with check,
                exits non-zero
        """
        args = [str(a) for a in args]
        timeout = timeout if timeout is not None else self.timeout

        logger.debug("running command", command=" ".join(args), timeout=timeout)

        try:
            proc = subprocess.run(
                args,
                input=input,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise CommandTimeoutError(
                f"{args[0]} timed out after {timeout}s", command=args
            ) from e
        except FileNotFoundError as e:
            raise ExternalCommandError(f"{args[0]} not found", command=args) from e

        result = CommandResult(
            args=args,
            returncode=proc.returncode,
            stdout=proc.stdout or "",
            stderr=proc.stderr or "",
        )

        if check and not result.ok:
            logger.warning(
                "command failed",
                command=" ".join(args),
                returncode=result.returncode,
                stderr=result.stderr.strip(),
            )
            raise ExternalCommandError(
                f"{' '.join(args)} exited with status {result.returncode}",
                command=args,
                returncode=result.returncode,
                stderr=result.stderr,
            )

        return result


class SystemClock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return utcnow()

    def sleep(self, seconds: float):
        if seconds > 0:
            time.sleep(seconds)


class LocalFilesystem:
    """Text file access for configuration and backup files."""

    def read_text(self, path: Path) -> str:
        return Path(path).read_text(encoding="utf-8")

    def write_text(self, path: Path, text: str, mode: int = 0o600):
        """Write a file atomically, creating it with the given permissions."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".tmp")
        fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
        # os.open honours the umask, chmod does not
        os.chmod(tmp, mode)
        os.replace(tmp, path)

    def exists(self, path: Path) -> bool:
        return Path(path).exists()

    def remove(self, path: Path):
        Path(path).unlink()

    def list(self, directory: Path, pattern: str = "*") -> List[Path]:
        directory = Path(directory)
        if not directory.is_dir():
            return []
        return sorted(directory.glob(pattern))

    def mkdir(self, directory: Path, mode: int = 0o700):
        Path(directory).mkdir(parents=True, exist_ok=True, mode=mode)
