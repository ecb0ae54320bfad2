"""Command-line entry point to run the development server."""

from __future__ import annotations

import argparse
import logging

from . import RPSettings, create_app


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Passkey relying party server")
    parser.add_argument("--host", default="127.0.0.1", help="Interface to bind")
    parser.add_argument("--port", type=int, default=5000, help="Port to listen on")
    parser.add_argument("--debug", action="store_true", help="Enable the Flask debugger")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    settings = RPSettings()
    logging.basicConfig(level=settings.log_level, format="%(message)s")
    logging.getLogger("werkzeug").setLevel(logging.WARNING)
    app = create_app(settings)
    app.run(host=args.host, port=args.port, debug=args.debug)


if __name__ == "__main__":
    main()
