"""Launcher wrapper script for tool-runner based servers."""

from pathlib import Path

WRAPPER_FILENAME = "mcp_launcher.py"

WRAPPER_SCRIPT = '''#!/usr/bin/env python3
"""Auto-generated launcher for an MCP server run through a tool runner."""

import os
import shutil
import signal
import subprocess
import sys


def main():
    if len(sys.argv) < 2:
        sys.stderr.write("usage: mcp_launcher.py <tool> [args...]\\n")
        return 2

    argv = sys.argv[1:]
    argv[0] = shutil.which(argv[0]) or argv[0]

    kwargs = {}
    if os.name == "nt":
        kwargs["creationflags"] = subprocess.CREATE_NEW_CONSOLE

    child = subprocess.Popen(argv, **kwargs)

    def forward(signum, frame):
        if child.poll() is None:
            child.send_signal(signum)

    for name in ("SIGINT", "SIGTERM"):
        sig = getattr(signal, name, None)
        if sig is not None:
            signal.signal(sig, forward)

    return child.wait()


if __name__ == "__main__":
    sys.exit(main())
'''


def write_wrapper_script(target_dir: Path) -> Path:
    """Write the launcher wrapper into ``target_dir``.

    Args:
        target_dir: Installation directory

    Returns:
        Path: Path to the wrapper script
    """
    target_dir.mkdir(parents=True, exist_ok=True)
    script_path = target_dir / WRAPPER_FILENAME

    with open(script_path, "w", encoding="utf-8") as f:
        f.write(WRAPPER_SCRIPT)

    script_path.chmod(0o755)

    return script_path
