"""Run the ingest service: ``python -m telemetry_ingest [--host H] [--port P]``."""

from __future__ import annotations

import argparse

import uvicorn

from common.config import get_settings
from common.logging_setup import configure_logging


def main() -> None:
    parser = argparse.ArgumentParser(description="Coffee machine telemetry ingest service")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8000)
    args = parser.parse_args()

    configure_logging(get_settings().log_level)
    uvicorn.run("telemetry_ingest.main:app", host=args.host, port=args.port, log_config=None)


if __name__ == "__main__":
    main()
