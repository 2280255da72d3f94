"""Launch the sidecar API with repository-relative imports."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Final

import uvicorn

DEFAULT_LOG_LEVEL: Final[str] = "info"


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the sidecar orchestration engine.")
    parser.add_argument("--host", default=None, help="Bind address (overrides settings/env).")
    parser.add_argument("--port", type=int, default=None, help="Port to bind to (overrides settings/env).")
    parser.add_argument(
        "--context-host",
        choices=["dummy", "bridge"],
        default=None,
        help="Context host implementation (overrides settings/env).",
    )
    parser.add_argument(
        "--log-level",
        choices=["critical", "error", "warning", "info", "debug"],
        default=None,
        help="Log level for sidecar and uvicorn output (overrides settings/env).",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()

    repo_root = Path(__file__).resolve().parents[1]
    sys.path.insert(0, str(repo_root))

    # Import after sys.path is adjusted
    from sidecar.api import create_app
    from sidecar.bootstrap import build_engine
    from sidecar.config import get_settings

    settings = get_settings()
    if args.context_host:
        settings = settings.model_copy(update={"context_host": args.context_host})
    host = args.host or settings.host
    port = args.port or settings.port
    log_level = (args.log_level or settings.log_level or DEFAULT_LOG_LEVEL).lower()
    root_level = getattr(logging, log_level.upper(), logging.INFO)

    logging.basicConfig(level=root_level, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    for logger_name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        logging.getLogger(logger_name).setLevel(root_level)
    if settings.config_path:
        logging.getLogger(__name__).info("Loaded settings from %s", settings.config_path)

    app = create_app(build_engine(settings))
    uvicorn.run(app, host=host, port=port, log_level=log_level, log_config=None)


if __name__ == "__main__":
    main()
