#!/usr/bin/env python3
"""
Memento Mori push service launcher (FastAPI + SQLite)

What it does:
- Creates .venv if missing
- Installs the project (pip install -e .) into .venv
- Starts the API server (uvicorn), which also runs the daily scheduler
  in a background thread unless SCHEDULER_ENABLED=false
- Or runs the scheduler on its own

Usage:
  python run.py                         # API server + in-process scheduler
  python run.py --scheduler             # scheduler only
  python run.py --no-scheduler          # API server only
  python run.py --no-install            # skip pip install
  python run.py --host 0.0.0.0 --port 3001
"""

from __future__ import annotations

import argparse
import os
import platform
import subprocess
import sys
import textwrap
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent
VENV_DIR = PROJECT_ROOT / ".venv"


def is_windows() -> bool:
    return platform.system().lower().startswith("win")


def venv_python_path() -> Path:
    if is_windows():
        return VENV_DIR / "Scripts" / "python.exe"
    return VENV_DIR / "bin" / "python"


def run(cmd: list[str], *, env: dict | None = None, check: bool = True) -> int:
    print("\n> " + " ".join(cmd))
    return subprocess.run(cmd, cwd=str(PROJECT_ROOT), env=env, check=check).returncode


def ensure_project_layout() -> None:
    if not (PROJECT_ROOT / "pyproject.toml").exists():
        raise FileNotFoundError(f"Missing pyproject.toml in {PROJECT_ROOT}")
    if not (PROJECT_ROOT / "memento" / "main.py").exists():
        raise FileNotFoundError(f"Missing memento/ package in {PROJECT_ROOT}")


def ensure_venv() -> Path:
    py = venv_python_path()
    if py.exists():
        return py

    print(f"Creating virtual environment at: {VENV_DIR}")
    run([sys.executable, "-m", "venv", str(VENV_DIR)])
    if not py.exists():
        raise RuntimeError(f"Virtualenv created but python not found at: {py}")
    return py


def pip_install(venv_py: Path) -> None:
    run([str(venv_py), "-m", "pip", "install", "--upgrade", "pip"])
    run([str(venv_py), "-m", "pip", "install", "-e", str(PROJECT_ROOT)])


def start_server(venv_py: Path, host: str, port: int, with_scheduler: bool) -> int:
    env = dict(os.environ)
    if not with_scheduler:
        env["SCHEDULER_ENABLED"] = "false"
    log_level = os.environ.get("LOG_LEVEL", "info").strip().lower() or "info"
    cmd = [str(venv_py), "-m", "uvicorn", "memento.main:app", "--host", host, "--port", str(port), "--log-level", log_level]
    print(f"\nStarting server on {host}:{port} (scheduler {'on' if with_scheduler else 'off'})")
    print("Press Ctrl+C to stop.\n")
    return run(cmd, env=env, check=False)


def main() -> int:
    parser = argparse.ArgumentParser(
        prog="memento-run",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description=textwrap.dedent(
            """
            Launcher for the Memento Mori push service.

            Modes:
              (default)      API server with the scheduler thread
              --scheduler    scheduler only
              --no-scheduler API server only
            """
        ).strip(),
    )

    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--scheduler", action="store_true", help="Run only the scheduler loop")
    mode.add_argument("--no-scheduler", action="store_true", help="Run the API without the scheduler thread")

    parser.add_argument("--no-install", action="store_true", help="Skip pip install (assumes .venv is ready)")
    parser.add_argument("--host", default="127.0.0.1", help="Server host (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=int(os.environ.get("PORT", "3001")), help="Server port (default: $PORT or 3001)")

    args = parser.parse_args()

    ensure_project_layout()
    venv_py = ensure_venv()
    if not args.no_install:
        pip_install(venv_py)

    if args.scheduler:
        print("Running scheduler (Ctrl+C to stop)...\n")
        return run([str(venv_py), "-m", "memento.jobs.schedule_runner"], check=False)

    return start_server(venv_py, args.host, args.port, with_scheduler=not args.no_scheduler)


if __name__ == "__main__":
    try:
        raise SystemExit(main())
    except KeyboardInterrupt:
        print("\nStopped.")
        raise
