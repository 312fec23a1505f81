from __future__ import annotations

import argparse
import sys

import uvicorn

from car_recognition.config import Settings
from car_recognition.logging import get_logger, init_logging


def _parse_args(argv: list[str]) -> argparse.Namespace:
    ap = argparse.ArgumentParser(description="Run the car recognition API server")
    ap.add_argument("--host", default=None, help="Bind address (defaults to settings)")
    ap.add_argument("--port", type=int, default=None, help="Bind port (defaults to settings)")
    ap.add_argument("--reload", action="store_true", help="Enable autoreload for development")
    return ap.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    init_logging()
    args = _parse_args(argv if argv is not None else sys.argv[1:])
    s = Settings.load()
    host = args.host or s.app.host
    port = int(args.port or s.app.port)
    if not s.recognition.configured:
        get_logger().warning("serve_recognition_unconfigured set RECOGNITION__API_URL")
    get_logger().info("serve_start host=%s port=%d", host, port)
    uvicorn.run("car_recognition.api.app:app", host=host, port=port, reload=bool(args.reload))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
