from __future__ import annotations

import argparse
import asyncio
import dataclasses
import logging
import os
import sys

from bookflow.config.load_config import ConfigError, load_app_config
from bookflow.runtime.pipeline import build_pipeline
from bookflow.storage.sqlite_store import SQLiteStore
from bookflow.tools.browser import BrowserManager


logger = logging.getLogger(__name__)


def _parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Scrape, enrich, score and deliver books for one topic.")
    parser.add_argument("--topic", required=True, help="Search topic, e.g. 'python programming'.")
    parser.add_argument(
        "--db-path",
        default="",
        help="SQLite path (default: env BOOKFLOW_SQLITE_PATH or data/app.db).",
    )
    parser.add_argument("--batch-size", type=int, default=0, help="Override flow.batch_size.")
    parser.add_argument("--headed", action="store_true", help="Show the browser window.")
    return parser.parse_args(argv)


async def _run(store: SQLiteStore, topic: str, args: argparse.Namespace) -> str:
    cfg = load_app_config()
    if args.batch_size:
        cfg = dataclasses.replace(cfg, flow=dataclasses.replace(cfg.flow, batch_size=int(args.batch_size)))
    browser = BrowserManager(headless=cfg.extractor.headless and not args.headed)
    try:
        pipeline = build_pipeline(store, cfg, browser=browser)
        rec = store.create_request(topic=topic)
        print(f"request_id: {rec.request_id}")
        status = await pipeline.run_request(rec.request_id, topic)
        print(f"status: {status}")
        print(f"books: {store.count_books(request_id=rec.request_id)}")
        row = store.get_request(request_id=rec.request_id)
        if row is not None and row["error"]:
            print(f"error: {row['error']}", file=sys.stderr)
        return status
    finally:
        await browser.close()


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(sys.argv[1:] if argv is None else argv)
    logging.basicConfig(
        level=os.getenv("BOOKFLOW_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    topic = (args.topic or "").strip()
    if not topic:
        raise SystemExit("--topic must not be blank")

    store = SQLiteStore(args.db_path or None)
    try:
        status = asyncio.run(_run(store, topic, args))
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return 2
    except KeyboardInterrupt:
        return 130
    finally:
        store.close()
    return 0 if status == "done" else 1


if __name__ == "__main__":
    raise SystemExit(main())
