"""Viewport keep-alive for the repaint-driven server loop.

The host only ticks :class:`~moho_bridge.ipc.server.ServerLoop` from its
viewport repaint callback. An idle window stops repainting, and requests then
sit unanswered until the user touches the host again. On Windows a hidden
PowerShell helper forces a repaint of every MOHO window about four times a
second while a client is connected. Elsewhere the keep-alive does nothing.
"""

from __future__ import annotations

import logging
import subprocess
import sys
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)

SCRIPT_FILE_NAME: str = "keep-alive.ps1"
"""Helper script written into the IPC directory."""

_STOP_TIMEOUT = 2.0

KEEP_ALIVE_SCRIPT: str = r"""
Add-Type -TypeDefinition @"
using System;
using System.Runtime.InteropServices;
using System.Collections.Generic;

public class MohoKeepAlive {
    [DllImport("user32.dll")]
    public static extern bool RedrawWindow(IntPtr hWnd, IntPtr lprcUpdate, IntPtr hrgnUpdate, uint flags);

    [DllImport("user32.dll")]
    public static extern bool PostMessage(IntPtr hWnd, uint Msg, IntPtr wParam, IntPtr lParam);

    [DllImport("user32.dll")]
    public static extern bool EnumChildWindows(IntPtr hWndParent, EnumChildProc lpEnumFunc, IntPtr lParam);

    public delegate bool EnumChildProc(IntPtr hWnd, IntPtr lParam);

    private static List<IntPtr> childWindows = new List<IntPtr>();

    private static bool EnumCallback(IntPtr hWnd, IntPtr lParam) {
        childWindows.Add(hWnd);
        return true;
    }

    public static IntPtr[] GetChildWindows(IntPtr parent) {
        childWindows.Clear();
        EnumChildWindows(parent, EnumCallback, IntPtr.Zero);
        return childWindows.ToArray();
    }
}
"@

$WM_MOUSEMOVE = 0x0200
$rdwFlags = 0x0001 -bor 0x0100 -bor 0x0080

while ($true) {
    $procs = Get-Process -Name "Moho*" -ErrorAction SilentlyContinue
    if (-not $procs) {
        Start-Sleep -Seconds 2
        continue
    }
    foreach ($p in $procs) {
        $hwnd = $p.MainWindowHandle
        if ($hwnd -ne [IntPtr]::Zero) {
            [MohoKeepAlive]::RedrawWindow($hwnd, [IntPtr]::Zero, [IntPtr]::Zero, $rdwFlags) | Out-Null
            foreach ($child in [MohoKeepAlive]::GetChildWindows($hwnd)) {
                [MohoKeepAlive]::PostMessage($child, $WM_MOUSEMOVE, [IntPtr]::Zero, [IntPtr]::Zero) | Out-Null
            }
        }
    }
    Start-Sleep -Milliseconds 250
}
"""
"""PowerShell loop that invalidates the MOHO main window and its children."""


class KeepAlive(Protocol):
    """Something :class:`ClientChannel` starts on connect and stops on disconnect.

    Both methods must be idempotent.
    """

    def start(self) -> None: ...

    def stop(self) -> None: ...


class NullKeepAlive:
    """Keep-alive for platforms where the host repaints on its own."""

    def start(self) -> None:
        pass

    def stop(self) -> None:
        pass


class WindowsKeepAlive:
    """Runs :data:`KEEP_ALIVE_SCRIPT` in a hidden PowerShell process.

    Args:
        ipc_dir: Directory receiving the helper script.
        executable: PowerShell executable name or path.
    """

    def __init__(self, ipc_dir: Path, *, executable: str = "powershell") -> None:
        self._script_path = Path(ipc_dir) / SCRIPT_FILE_NAME
        self._executable = executable
        self._process: subprocess.Popen[bytes] | None = None

    @property
    def is_running(self) -> bool:
        """Whether the helper process is alive."""
        return self._process is not None and self._process.poll() is None

    def start(self) -> None:
        """Write the script and spawn the helper; does nothing if already running.

        A missing PowerShell is logged, not raised: the bridge still works,
        only with higher latency while the host is idle.
        """
        if self.is_running:
            return

        self._script_path.parent.mkdir(parents=True, exist_ok=True)
        self._script_path.write_text(KEEP_ALIVE_SCRIPT, encoding="utf-8")

        try:
            self._process = subprocess.Popen(
                [
                    self._executable,
                    "-WindowStyle",
                    "Hidden",
                    "-ExecutionPolicy",
                    "Bypass",
                    "-File",
                    str(self._script_path),
                ],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                creationflags=getattr(subprocess, "CREATE_NO_WINDOW", 0),
            )
        except OSError as exc:
            logger.warning("Keep-alive could not start %s: %s", self._executable, exc)
            self._process = None
            return

        logger.info("Keep-alive started (MOHO viewport refresh)")

    def stop(self) -> None:
        """Terminate the helper and remove its script."""
        process, self._process = self._process, None
        if process is not None:
            process.terminate()
            try:
                process.wait(timeout=_STOP_TIMEOUT)
            except subprocess.TimeoutExpired:
                process.kill()
            logger.info("Keep-alive stopped")

        self._script_path.unlink(missing_ok=True)


def default_keep_alive(ipc_dir: Path) -> KeepAlive:
    """The keep-alive suited to the current platform."""
    if sys.platform == "win32":
        return WindowsKeepAlive(ipc_dir)
    return NullKeepAlive()
