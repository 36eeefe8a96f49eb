"""
Run the CMS API under uvicorn.
"""

from __future__ import annotations

import argparse
import logging

import uvicorn

from cms_backend.config import get_settings

logger = logging.getLogger(__name__)


def main() -> int:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="LLA Web CMS API server")
    parser.add_argument("--host", default=settings.server_host, help="Bind address")
    parser.add_argument(
        "--port", type=int, default=settings.port, help="Port to listen on"
    )
    parser.add_argument(
        "--reload", action="store_true", help="Reload on code changes (development)"
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(name)s %(levelname)s %(asctime)s %(message)s",
        datefmt="%m/%d/%Y %I:%M:%S %p",
    )
    logger.info(
        "Starting CMS API on %s:%d (%s)", args.host, args.port, settings.environment
    )
    uvicorn.run(
        "cms_backend.app:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level="info",
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
