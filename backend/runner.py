import os
import sys
from importlib import import_module
from pathlib import Path
from typing import cast

from fastapi import FastAPI
from uvicorn import Config, Server

BACKEND_DIR = Path(__file__).resolve().parent
REPO_DIR = BACKEND_DIR.parent

for candidate in [str(BACKEND_DIR), str(REPO_DIR)]:
    if candidate not in sys.path:
        sys.path.insert(0, candidate)

try:
    app_module = import_module("app")
except ModuleNotFoundError:
    app_module = import_module("backend.app")

app = cast(FastAPI, app_module.app)


def _parse_port(raw: str | None) -> int:
    if raw is None or raw.strip() == "":
        return 8000
    try:
        port = int(raw)
    except ValueError as exc:
        raise RuntimeError("BACKEND_PORT must be an integer.") from exc
    if not 0 < port < 65536:
        raise RuntimeError("BACKEND_PORT must be between 1 and 65535.")
    return port


def main() -> None:
    port = _parse_port(os.getenv("BACKEND_PORT"))
    host = os.getenv("BACKEND_HOST", "127.0.0.1")
    config = Config(app=app, host=host, port=port, reload=False, log_config=None)
    server = Server(config)
    server.run()


if __name__ == "__main__":
    main()
