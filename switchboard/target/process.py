"""Quit and relaunch the Cursor application.

Both operations are advisory: failures are logged and swallowed. A Cursor
that refuses to quit shows up later as a locked state store, which the swap
reports on its own.
"""

import asyncio
import logging
import shutil
import subprocess
import sys
from pathlib import Path
from typing import Callable, Optional

logger = logging.getLogger("switchboard.process")

TERMINATE_GRACE = 0.5
RELAUNCH_DELAY = 0.3


class ProcessController:
    """Platform-specific quit/launch commands for Cursor.

    >>> ProcessController(platform="win32").termination_commands()
    [['taskkill', '/IM', 'Cursor.exe', '/F']]
    """

    def __init__(
        self,
        platform: Optional[str] = None,
        *,
        grace: float = TERMINATE_GRACE,
        relaunch_delay: float = RELAUNCH_DELAY,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
        spawner: Callable[..., subprocess.Popen] = subprocess.Popen,
        default_app_paths: Optional[Callable[[], list[Path]]] = None,
    ):
        self.platform = platform or sys.platform
        self.grace = grace
        self.relaunch_delay = relaunch_delay
        self._runner = runner
        self._spawner = spawner
        self._default_app_paths = default_app_paths

    def termination_commands(self) -> list[list[str]]:
        if self.platform == "darwin":
            return [
                ["osascript", "-e", 'tell application "Cursor" to quit'],
                ["pkill", "-f", "Cursor.app"],
            ]
        if self.platform == "win32":
            return [["taskkill", "/IM", "Cursor.exe", "/F"]]
        # Exact process names so the switchboard process itself is never matched
        return [["pkill", "-x", "cursor"], ["pkill", "-x", "Cursor"]]

    async def terminate(self) -> None:
        """Ask Cursor to exit, then wait a short grace period. Never raises."""
        for cmd in self.termination_commands():
            try:
                result = await asyncio.to_thread(
                    self._runner, cmd, capture_output=True, timeout=5
                )
                logger.debug(f"{cmd[0]} exited with {result.returncode}")
            except (OSError, subprocess.SubprocessError) as e:
                logger.warning(f"Terminating Cursor via {cmd[0]} failed: {e}")
        await asyncio.sleep(self.grace)

    def launch_command(self, preferred_path: Optional[str] = None) -> Optional[list[str]]:
        """Command that starts Cursor, or None when no executable is known.

        >>> ProcessController(platform="darwin").launch_command()
        ['open', '-a', 'Cursor']
        >>> ProcessController(platform="linux").launch_command("/opt/cursor.AppImage")
        ['/opt/cursor.AppImage']
        """
        if self.platform == "darwin":
            return ["open", "-a", preferred_path or "Cursor"]

        if preferred_path:
            return [preferred_path]

        if self._default_app_paths is not None:
            candidates = self._default_app_paths()
        else:
            from switchboard.target.locator import candidate_app_paths

            candidates = candidate_app_paths(self.platform)
        for path in candidates:
            if path.exists():
                return [str(path)]

        if self.platform != "win32":
            on_path = shutil.which("cursor")
            if on_path:
                return [on_path]
        return None

    async def relaunch(self, preferred_path: Optional[str] = None) -> None:
        """Start Cursor detached from this process. Never raises."""
        await asyncio.sleep(self.relaunch_delay)
        cmd = self.launch_command(preferred_path)
        if cmd is None:
            logger.warning("Cursor executable not found; start it manually")
            return

        kwargs: dict = {
            "stdin": subprocess.DEVNULL,
            "stdout": subprocess.DEVNULL,
            "stderr": subprocess.DEVNULL,
        }
        if self.platform == "win32":
            kwargs["creationflags"] = getattr(subprocess, "DETACHED_PROCESS", 0)
        else:
            kwargs["start_new_session"] = True

        try:
            self._spawner(cmd, **kwargs)
            logger.info(f"Relaunched Cursor: {' '.join(cmd)}")
        except (OSError, subprocess.SubprocessError) as e:
            logger.warning(f"Relaunching Cursor failed: {e}")
