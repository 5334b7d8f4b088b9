#!/usr/bin/env python3
"""
Rebuild topic baselines from stored hourly buckets.

Usage:
    cd backend && source venv/bin/activate
    python scripts/rebuild_topic_baselines.py --dry-run
    python scripts/rebuild_topic_baselines.py --topic "senate vote" --topic "port strike"
    python scripts/rebuild_topic_baselines.py --output report.json
"""
import argparse
import json
import os
import sys
from datetime import datetime

# Add backend directory to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from trendwatch.config.detection_config import load_detection_config
from trendwatch.database import SessionLocal, init_db
from trendwatch.models.trend import TopicBaseline
from trendwatch.services.baseline_service import BaselineEstimator
from trendwatch.services.evidence_normalizer import utcnow
from trendwatch.services.topic_identity_normalization import canonical_topic_key


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Rebuild topic baselines from hourly buckets")
    parser.add_argument("--topic", action="append", default=[], help="Topic label or key (repeatable); default is every topic")
    parser.add_argument("--dry-run", action="store_true", help="Compute but roll back")
    parser.add_argument("--output", type=str, help="Write report to JSON file")
    return parser


def _save_json(path, payload) -> None:
    with open(path, "w") as f:
        json.dump(payload, f, indent=2)


def main():
    args = _build_parser().parse_args()

    print("=" * 60)
    print(f"Topic Baseline Rebuild {'(DRY RUN)' if args.dry_run else '(LIVE)'}")
    print(f"Time: {datetime.now().isoformat()}")
    print("=" * 60)

    init_db()
    db = SessionLocal()
    try:
        config = load_detection_config(db)
        estimator = BaselineEstimator(db, config)
        now = utcnow()
        if args.topic:
            topic_keys = [canonical_topic_key(topic) for topic in args.topic]
        else:
            topic_keys = [key for (key,) in db.query(TopicBaseline.topic_key).order_by(TopicBaseline.topic_key)]

        report = []
        for topic_key in topic_keys:
            stats = estimator.rebuild_baseline(topic_key, now=now)
            established = stats.is_established(config.min_baseline_hours)
            report.append({
                "topic_key": topic_key,
                "data_points": stats.data_points,
                "mean_hourly": round(stats.mean_hourly, 4),
                "std_dev": round(stats.std_dev, 4),
                "established": established,
            })
            print(
                f"  {topic_key:<40} n={stats.data_points:<5} mean={stats.mean_hourly:8.3f} "
                f"std={stats.std_dev:8.3f} {'established' if established else 'learning'}"
            )

        if args.dry_run:
            db.rollback()
            print("\nDry run: no changes written.")
        else:
            db.commit()
            print(f"\nRebuilt {len(report)} baseline(s).")

        if args.output:
            _save_json(args.output, {"generated_at": now.isoformat(), "dry_run": args.dry_run, "topics": report})
            print(f"Report written to {args.output}")
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == "__main__":
    main()
