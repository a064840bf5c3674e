"""
Standalone server entry point.
"""

import argparse

import uvicorn

from .config import get_settings


def main() -> None:
    settings = get_settings()

    parser = argparse.ArgumentParser(description="Conciliacao reconciliation API")
    parser.add_argument("--host", default=settings.host, help="Interface to bind")
    parser.add_argument("--port", type=int, default=settings.port, help="Port to run the server on")
    args = parser.parse_args()

    print(f"Starting backend on {args.host}:{args.port}")
    uvicorn.run(
        "conciliacao.main:app",
        host=args.host,
        port=args.port,
        log_level=settings.app_log_level.lower(),
    )


if __name__ == "__main__":
    main()
