"""Entry point for the bridge.

Usage::

    python -m mailbridge --config config.json

See ``config.example.json`` for the file layout.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys

import structlog
from pydantic import ValidationError

from .config import load_config
from .logging import setup_logging
from .service import BridgeService

logger = structlog.get_logger()


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="mailbridge", description=__doc__.splitlines()[0])
    parser.add_argument("--config", default="config.json", help="Path to the JSON config file")
    args = parser.parse_args(argv)

    setup_logging()
    try:
        config = load_config(args.config)
    except FileNotFoundError:
        logger.error("config_file_missing", path=args.config)
        sys.exit(1)
    except json.JSONDecodeError as exc:
        logger.error("config_not_json", path=args.config, error=str(exc))
        sys.exit(1)
    except ValidationError as exc:
        logger.error("config_invalid", path=args.config, errors=exc.errors(include_url=False))
        sys.exit(1)

    asyncio.run(BridgeService(config).run())


if __name__ == "__main__":
    main()
