#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging

from batch_engine.config import EngineSettings
from batch_engine.reaper import OrphanReaper
from batch_engine.repositories.jobs import create_jobs_repository_from_env


def main() -> int:
    parser = argparse.ArgumentParser(description="Fail running jobs that stopped making progress.")
    parser.add_argument(
        "--threshold-s",
        type=int,
        default=0,
        help="Override ENGINE_ORPHAN_THRESHOLD_S (0 keeps the configured value).",
    )
    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")

    settings = EngineSettings.from_env()
    reaper = OrphanReaper(
        repository=create_jobs_repository_from_env(settings),
        threshold_s=args.threshold_s or settings.orphan_threshold_s,
    )
    reaped = reaper.reap()
    print(
        json.dumps(
            {"success": True, "reaped": len(reaped), "job_ids": [j.job_id for j in reaped]},
            ensure_ascii=True,
        )
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
