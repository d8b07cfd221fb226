"""Command runner — bounded subprocess calls and host file mutations."""

from __future__ import annotations

import logging
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30


@dataclass
class CommandResult:
    success: bool
    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0
    error: str = ""
    timed_out: bool = False

    @property
    def output(self) -> str:
        """stdout and stderr joined, for messages."""
        text = self.stdout
        if self.stderr:
            text += ("\n" if text else "") + self.stderr
        return (text or self.error).strip()


class CommandRunner:
    """Runs external commands with a timeout.

    In dry-run mode, read-only commands still execute but anything passed
    with ``mutates=True`` (and every file write/removal) is only logged.
    """

    def __init__(self, dry_run: bool = False, default_timeout: int = DEFAULT_TIMEOUT):
        self.dry_run = dry_run
        self.default_timeout = default_timeout
        self.recorded: list[str] = []

    def run(
        self,
        cmd: Sequence[str],
        timeout: Optional[int] = None,
        mutates: bool = False,
        cwd: Optional[Path] = None,
    ) -> CommandResult:
        timeout = timeout or self.default_timeout
        rendered = " ".join(cmd)
        if mutates and self.dry_run:
            self._record(f"$ {rendered}")
            return CommandResult(success=True)

        logger.debug("Running: %s", rendered)
        try:
            result = subprocess.run(
                list(cmd),
                capture_output=True,
                text=True,
                timeout=timeout,
                cwd=str(cwd) if cwd else None,
            )
        except subprocess.TimeoutExpired:
            logger.warning("Command timed out after %ss: %s", timeout, rendered)
            return CommandResult(
                success=False,
                error=f"'{rendered}' timed out after {timeout} seconds",
                timed_out=True,
            )
        except FileNotFoundError:
            return CommandResult(
                success=False,
                exit_code=127,
                error=f"Command not found: {cmd[0]}",
            )
        if result.returncode != 0:
            logger.debug(
                "Command failed (%d): %s\n%s",
                result.returncode, rendered, result.stderr,
            )
        return CommandResult(
            success=result.returncode == 0,
            stdout=result.stdout,
            stderr=result.stderr,
            exit_code=result.returncode,
        )

    @staticmethod
    def which(name: str) -> Optional[str]:
        return shutil.which(name)

    # ── File mutations ───────────────────────────────────────────────

    def write_file(self, path: Path, content: str, mode: Optional[int] = None) -> bool:
        """Write ``content`` unless the file already holds it. Returns True if changed."""
        if path.is_file() and path.read_text() == content:
            return False
        if self.dry_run:
            self._record(f"write {path}")
            return True
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
        if mode is not None:
            path.chmod(mode)
        logger.debug("Wrote %s", path)
        return True

    def remove_file(self, path: Path) -> bool:
        if not path.exists():
            return False
        if self.dry_run:
            self._record(f"remove {path}")
            return True
        path.unlink()
        logger.debug("Removed %s", path)
        return True

    def copy_file(self, src: Path, dst: Path) -> bool:
        return self.write_file(dst, src.read_text())

    def _record(self, action: str) -> None:
        logger.info("[dry-run] %s", action)
        self.recorded.append(action)


def tail(text: str, lines: int = 5) -> str:
    """Last few lines of command output, for error messages."""
    return "\n".join(text.strip().splitlines()[-lines:])
