#!/usr/bin/env python3
from __future__ import annotations

import argparse
import importlib
import json
import logging
import os
from collections.abc import Callable
from typing import Any

from batch_engine.catalog import InMemoryItemCatalog
from batch_engine.processors import StagedItemProcessor
from batch_engine.queue_backend import create_queue_from_env
from batch_engine.service import BatchJobService, create_service_from_env
from batch_engine.worker_runtime import create_worker_runtime_from_env


def _demo_service(queue_backend: Any) -> BatchJobService:
    catalog = InMemoryItemCatalog()
    return create_service_from_env(
        provider=catalog,
        processor=StagedItemProcessor(catalog=catalog),
        activity_source=catalog,
        queue_backend=queue_backend,
        environ={**os.environ, "ENGINE_SCHEDULER": "queue"},
    )


def _load_factory(path: str) -> Callable[[Any], BatchJobService]:
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise SystemExit(f"--service-factory must look like package.module:callable, got {path!r}")
    return getattr(importlib.import_module(module_name), attr)


def main() -> int:
    parser = argparse.ArgumentParser(description="Drain queued job continuations and run one chunk per message.")
    parser.add_argument(
        "--iterations",
        type=int,
        default=0,
        help="Stop after N iterations (0 means run forever).",
    )
    parser.add_argument(
        "--service-factory",
        default="",
        help="module:callable taking the queue backend and returning a BatchJobService.",
    )
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args()
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s %(message)s")

    queue_backend = create_queue_from_env()
    factory = _load_factory(args.service_factory) if args.service_factory else _demo_service
    service = factory(queue_backend)
    runtime = create_worker_runtime_from_env(service=service, queue_backend=queue_backend)
    if args.iterations > 0:
        stats = runtime.run_forever(stop_after_iterations=args.iterations)
    else:
        stats = runtime.run_forever(stop_after_iterations=None)
    print(json.dumps({"success": True, "stats": stats}, ensure_ascii=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
