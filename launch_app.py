"""Bootstrap a local virtualenv, install the rota into it and run a CLI command.

    python launch_app.py                 # serve the HTTP API
    python launch_app.py show 2024-01-08 # any app/main.py subcommand
"""

from __future__ import annotations

import hashlib
import os
import subprocess
import sys
import venv
from pathlib import Path
from typing import List


PROJECT_ROOT = Path(__file__).resolve().parent
VENV_DIR = PROJECT_ROOT / ".venv"
PROJECT_FILE = PROJECT_ROOT / "pyproject.toml"
INSTALL_MARKER = VENV_DIR / ".project.installed"
APP_ENTRYPOINT = PROJECT_ROOT / "app" / "main.py"


def venv_python() -> Path:
    if os.name == "nt":
        return VENV_DIR / "Scripts" / "python.exe"
    return VENV_DIR / "bin" / "python"


def _pip(*args: str) -> None:
    subprocess.check_call([str(venv_python()), "-m", "pip", *args])


def ensure_virtualenv() -> None:
    if venv_python().exists():
        return
    print(f"[launcher] Creating virtual environment at {VENV_DIR}...")
    venv.EnvBuilder(with_pip=True).create(VENV_DIR)


def project_signature() -> str:
    if not PROJECT_FILE.exists():
        raise FileNotFoundError(f"Project file not found: {PROJECT_FILE}")
    return hashlib.sha256(PROJECT_FILE.read_bytes()).hexdigest()


def ensure_project_installed() -> None:
    """Reinstall only when pyproject.toml changed since the last install."""
    signature = project_signature()
    if INSTALL_MARKER.exists() and INSTALL_MARKER.read_text().strip() == signature:
        print("[launcher] Project already installed.")
        return
    print("[launcher] Installing duty rota and its dependencies...")
    _pip("install", "--upgrade", "pip")
    _pip("install", "-e", str(PROJECT_ROOT))
    INSTALL_MARKER.write_text(signature)


def run_rota(argv: List[str]) -> int:
    ensure_virtualenv()
    ensure_project_installed()
    if not APP_ENTRYPOINT.exists():
        raise FileNotFoundError(f"App entrypoint not found: {APP_ENTRYPOINT}")
    command = argv or ["serve"]
    print(f"[launcher] Running: main.py {' '.join(command)}")
    return subprocess.call([str(venv_python()), str(APP_ENTRYPOINT), *command])


if __name__ == "__main__":
    try:
        exit_code = run_rota(sys.argv[1:])
    except subprocess.CalledProcessError as exc:
        print(f"[launcher] Command failed with exit code {exc.returncode}", file=sys.stderr)
        sys.exit(exc.returncode)
    except Exception as exc:
        print(f"[launcher] {exc}", file=sys.stderr)
        sys.exit(1)
    sys.exit(exit_code)
