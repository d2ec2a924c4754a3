"""
CLI to print the aggregated dashboard view from the session store.
"""
from __future__ import annotations
import argparse, json

from sentiment.aggregation import AggregationEngine
from sentiment.config import Settings
from sentiment.models import DemographicFilter
from sentiment.store import JsonSessionStore


def main():
    p = argparse.ArgumentParser()
    p.add_argument("--time", type=float, default=0.0, help="Query time in the stimulus (seconds)")
    p.add_argument("--duration", type=float, required=True, help="Stimulus duration (seconds)")
    p.add_argument("--stimulus", default=None, help="Stimulus id")
    for field in ("age", "gender", "race", "nationality"):
        p.add_argument(f"--{field}", default="all")
    args = p.parse_args()

    settings = Settings()
    engine = AggregationEngine(settings)
    records = engine.load(JsonSessionStore(settings).read_records(args.stimulus))
    flt = DemographicFilter(age=args.age, gender=args.gender, race=args.race, nationality=args.nationality)
    view = engine.view(records, flt, query_time=args.time, stimulus_duration=args.duration)
    if view.below_threshold:
        print(f"Only {view.participant_count} participants match; at least {view.threshold} "
              "are required before aggregated data is shown.")
    print(json.dumps(view.model_dump(mode="json"), indent=2, ensure_ascii=False))

if __name__ == "__main__":
    main()
