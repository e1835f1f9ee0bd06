"""Console entry point: ``chatrelay [PROJECT_ROOT] [--host H] [--port P] [--config F]``."""
from __future__ import annotations

import asyncio
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from chatrelay.engine.config import RelayConfig, discover_config, load_config

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"


def configure_logging(level: str, log_dir: Path | None) -> Path | None:
    """Install the rotating file handler and the stderr handler on the root logger."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(LOG_FORMAT)

    log_file = None
    if log_dir is not None:
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            log_file = log_dir / "chatrelay.log"
            file_handler = RotatingFileHandler(
                log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
            )
            file_handler.setFormatter(formatter)
            root.addHandler(file_handler)
        except OSError as exc:
            log_file = None
            sys.stderr.write(f"chatrelay: file logging disabled ({exc})\n")

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)
    return log_file


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(
        prog="chatrelay",
        description="Relay a browser chat client to the Claude CLI",
    )
    parser.add_argument(
        "project_root", nargs="?", default=None,
        help="Project directory the assistant works in (default: cwd)",
    )
    parser.add_argument(
        "--host", default=None,
        help="Interface to bind (default: CHATRELAY_HOST or 127.0.0.1)",
    )
    parser.add_argument(
        "--port", type=int, default=None,
        help="Port to listen on (default: CHATRELAY_PORT, PORT or 3000)",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file (default: <project>/.claude-code-chat/chatrelay.yaml)",
    )
    args = parser.parse_args()

    project_root = Path(args.project_root or os.getcwd()).resolve()
    if not project_root.is_dir():
        parser.error(f"project root is not a directory: {project_root}")

    config = RelayConfig.from_env()
    config_path = Path(args.config) if args.config else discover_config(
        project_root, config.store_dir_name,
    )
    if config_path is not None:
        config = load_config(config_path, base=config)
    if args.host:
        config.host = args.host
    if args.port is not None:
        config.port = args.port

    log_file = configure_logging(
        config.log_level, project_root / config.store_dir_name / "logs",
    )
    logger = logging.getLogger(__name__)
    logger.info(
        "Starting chatrelay project=%s host=%s port=%s config=%s log=%s",
        project_root, config.host, config.port,
        config_path or "<none>", log_file or "<stderr only>",
    )

    from chatrelay.web.server import RelayServer

    server = RelayServer(project_root, config)
    try:
        asyncio.run(server.start())
    except KeyboardInterrupt:
        logger.info("Interrupted")
    sys.exit(0)


if __name__ == "__main__":
    main()
