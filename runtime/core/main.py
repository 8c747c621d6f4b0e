#!/usr/bin/env python3
"""Keeper process entrypoint.

Default: serve the status API with uvicorn; the keeper starts with the app.
`--headless`: run the keeper alone until it halts or is interrupted.
"""

from __future__ import annotations

import argparse
import asyncio
import logging

import uvicorn
from dotenv import load_dotenv

from api.main import build_service_from_env, create_app
from config.settings import RuntimeConfig, default_config_paths, load_runtime_config
from errors import NotWhitelistedError

logger = logging.getLogger(__name__)


async def _run_headless(runtime: RuntimeConfig) -> int:
    service = build_service_from_env(runtime)
    try:
        await service.scheduler.run()
    except NotWhitelistedError:
        return 2
    finally:
        await service.stop()
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Upkeep keeper: works jobs during this network's master windows.")
    parser.add_argument("--headless", action="store_true", help="run without the HTTP status surface")
    args = parser.parse_args(argv)

    load_dotenv(override=False)
    runtime_path, _ = default_config_paths()
    runtime = load_runtime_config(runtime_path)

    if args.headless or not runtime.service.enabled:
        try:
            return asyncio.run(_run_headless(runtime))
        except KeyboardInterrupt:
            return 130

    app = create_app(lambda: build_service_from_env(runtime))
    uvicorn.run(app, host=runtime.service.host, port=runtime.service.port, log_config=None)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
