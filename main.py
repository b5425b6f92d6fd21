import argparse
import asyncio
import json
import logging
import sys
from dataclasses import asdict
from pathlib import Path

import uvicorn

from attendance import storage
from attendance.batch import BatchOrchestrator
from attendance.service import AttendanceService
from attendance.zoom_client import ZoomClient
from web.server import create_app

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
log = logging.getLogger("attendance")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Session attendance & cliff detection")
    parser.add_argument(
        "data_dir",
        help="Directory for config.json and the session database",
    )
    parser.add_argument(
        "command",
        nargs="?",
        choices=["serve", "batch"],
        default="serve",
        help="serve: run the admin API (default); batch: run one detection batch and exit",
    )
    return parser.parse_args()


def load_config(data_dir: str) -> dict:
    config_path = Path(data_dir) / "config.json"
    if not config_path.exists():
        log.error("Config file not found: %s", config_path)
        sys.exit(1)
    with open(config_path, "r", encoding="utf-8") as f:
        return json.load(f)


async def run_batch(client: ZoomClient, config: dict) -> None:
    summary = await BatchOrchestrator(client, config).run()
    print(json.dumps(asdict(summary), indent=2))


async def serve(client: ZoomClient, config: dict) -> None:
    app = create_app(AttendanceService(client, config), BatchOrchestrator(client, config))

    web_cfg = config.get("web", {})
    host = web_cfg.get("host", "127.0.0.1")
    port = web_cfg.get("port", 8000)

    server = uvicorn.Server(uvicorn.Config(app, host=host, port=port, log_level="info"))
    log.info("Admin API available at http://%s:%d", host, port)
    await server.serve()


async def main():
    args = parse_args()
    data_dir = str(Path(args.data_dir).resolve())
    config = load_config(data_dir)

    storage.init(str(Path(data_dir) / "attendance.db"))
    log.info("Data directory: %s", data_dir)

    client = ZoomClient(config)
    try:
        if args.command == "batch":
            await run_batch(client, config)
        else:
            await serve(client, config)
    finally:
        await client.aclose()


if __name__ == "__main__":
    asyncio.run(main())
