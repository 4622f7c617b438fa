"""Run the API server: python -m whisperlite [--host HOST] [--port PORT]"""
import argparse

import uvicorn

from whisperlite.internal_core.config import load_config
from whisperlite.logging_config import setup_logging


def main() -> None:
    config = load_config()
    setup_logging(config.WHISPERLITE_LOG_LEVEL)

    parser = argparse.ArgumentParser(description="Whisperlite API server")
    parser.add_argument("--port", type=int, default=config.WHISPERLITE_PORT, help="Port to bind")
    parser.add_argument("--host", type=str, default=config.WHISPERLITE_HOST, help="Host to bind")
    args = parser.parse_args()

    uvicorn.run("whisperlite.api.main:app", host=args.host, port=args.port, log_config=None)


if __name__ == "__main__":
    main()
