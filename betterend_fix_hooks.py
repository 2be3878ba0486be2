"""
Server-side half of the End fix: runs the repair pass at startup and, on the next
End load, fires "/end_island reset" for worlds that were just fixed.

The host is expected to provide:
  register_listener(callback)     called with callback(server, world) on every world load
  world.dimension                 dimension id, eg "minecraft:the_end"
  server.save_path()              root folder of the running save
  server.level_name               save name (for log output)
  server.execute(fn)              run fn on the thread that may issue commands
  server.dispatch(command)        run a command; may raise core.CommandSyntaxError
"""

from __future__ import annotations

from pathlib import Path
from typing import Callable

import betterend_fix as core


class EndIslandResetTrigger:
    """
    World-load listener that consumes the marker left by `core.apply_fix`.

    By default the marker is deleted even when the reset command fails, so a broken
    command can never fire again on every End load. Pass retry_failed_reset=True to
    keep the marker after a failure and try again on the next End load instead.
    """

    def __init__(self, log=print, *, retry_failed_reset: bool = False) -> None:
        self.log = log
        self.retry_failed_reset = retry_failed_reset

    def __call__(self, server, world) -> None:
        if world.dimension != core.END_DIMENSION:
            return

        marker = Path(server.save_path()) / core.MARKER
        if not marker.exists():
            return

        self.log(f"Detected End island reset marker for save '{server.level_name}'")
        self.log("Scheduling End island reset")
        server.execute(lambda: self._reset(server, marker))

    def _reset(self, server, marker: Path) -> None:
        ok = False
        try:
            server.dispatch(core.RESET_COMMAND)
            ok = True
            self.log("End island reset command executed")
        except core.CommandSyntaxError as e:
            self.log(f"ERROR: Failed to execute /{core.RESET_COMMAND}: {e}")
        except Exception as e:
            self.log(f"ERROR: /{core.RESET_COMMAND} raised {type(e).__name__}: {e}")

        if not ok and self.retry_failed_reset:
            self.log(f"Keeping marker {marker}, reset will be retried on the next End load")
            return

        try:
            marker.unlink(missing_ok=True)
            self.log(f"Deleted marker {marker}")
        except OSError as e:
            self.log(f"WARNING: Could not delete marker {marker}: {type(e).__name__}: {e}")


def initialize(
    game_dir: Path,
    register_listener: Callable[[Callable], None],
    *,
    log=print,
    retry_failed_reset: bool = False,
) -> int:
    """
    Scan and fix every world under `game_dir`, then hook the End reset if anything was fixed.

    Never raises: a failure anywhere in the pass is logged so the host keeps starting up.
    Returns the number of worlds fixed.
    """
    try:
        log("Scanning for worlds that need fixing")
        candidates = core.scan_for_fixes(Path(game_dir), log)
        if not candidates:
            log("No worlds need fixing.")
            return 0

        fixed = core.fix_all(candidates, log)
        log(f"Completed. {fixed} world(s) fixed.")

        if fixed > 0:
            register_listener(EndIslandResetTrigger(log, retry_failed_reset=retry_failed_reset))
            log("Registered End dimension load listener")
        return fixed
    except Exception as e:
        log(f"ERROR: Unexpected error during initialization: {type(e).__name__}: {e}")
        return 0
