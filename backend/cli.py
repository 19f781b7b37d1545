"""Single entry point: `dynwall` serves HTTP, `dynwall worker` runs the job loop."""

import argparse
import logging
import sys
from typing import Optional

from backend.app.config import Settings

logger = logging.getLogger("dynwall-backend")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Dynamic wallpaper service")
    parser.add_argument(
        "mode",
        nargs="?",
        choices=["server", "worker"],
        default="server",
        help="Run the HTTP server (default) or the background worker.",
    )
    parser.add_argument("--host", default="0.0.0.0", help="Bind address in server mode.")
    parser.add_argument("--port", type=int, default=8080, help="Port in server mode.")
    return parser


def main(argv: Optional[list] = None) -> int:
    args = build_parser().parse_args(argv if argv is not None else sys.argv[1:])
    settings = Settings.from_env()
    logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO))

    if args.mode == "worker":
        from worker.main import run_worker

        return run_worker(settings)

    import uvicorn

    from backend.app.context import build_context
    from backend.main import create_app

    app = create_app(build_context(settings))
    logger.info("Starting API server on port %d", args.port)
    uvicorn.run(app, host=args.host, port=args.port, log_level=settings.log_level.lower())
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
