"""Entry point for the web server.

Usage:
    python -m script_conveyor.web [--port PORT] [--host HOST] [--config FILE]
"""

import argparse
import os
import sys
from pathlib import Path


def main() -> int:
    """Run the web server."""
    parser = argparse.ArgumentParser(
        description="Script Conveyor web API",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port to run the server on (default from config)",
    )
    parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Host to bind to (default from config)",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to config.yaml",
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable auto-reload for development",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    args = parser.parse_args()
    return serve(args.config, args.host, args.port, reload=args.reload, verbose=args.verbose)


def serve(
    config_path: Path | None = None,
    host: str | None = None,
    port: int | None = None,
    reload: bool = False,
    verbose: bool = False,
) -> int:
    """Configure logging and dependencies, then run uvicorn."""
    # Import here to avoid loading FastAPI before parsing args
    import uvicorn

    from ..logging_config import console, setup_logging
    from .backend.dependencies import CONFIG_ENV_VAR, get_config

    setup_logging(verbose=verbose)

    if config_path is not None:
        os.environ[CONFIG_ENV_VAR] = str(config_path)

    # Update the cached config with CLI args
    config = get_config()
    if host:
        config.web.host = host
    if port:
        config.web.port = port

    console.print("[bold]Starting Script Conveyor API...[/bold]")
    console.print(f"  LLM provider: {config.llm.provider}")
    console.print(f"  Data dir: {config.storage.data_dir or '(in memory)'}")
    console.print(f"  URL: http://{config.web.host}:{config.web.port}")

    uvicorn.run(
        "script_conveyor.web.backend.app:create_app",
        host=config.web.host,
        port=config.web.port,
        reload=reload,
        factory=True,
    )

    return 0


if __name__ == "__main__":
    sys.exit(main())
