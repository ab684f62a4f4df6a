# backend/run_local.py
"""
Local maintenance commands.

    python -m backend.run_local parse "MTRID:MTR001;VOL:120.5;BATT:3.7V"
    python -m backend.run_local check        # list ownership divergences
    python -m backend.run_local reconcile    # rebuild owned-device sets

check and reconcile use the store configured by the environment, so set
USE_DYNAMODB=true to run them against the real tables.
"""
import json
import logging
import sys

from dotenv import load_dotenv

from backend.lib.settings import Settings
from backend.lib.water_meter_core.parser import parse_report

USAGE = "usage: python -m backend.run_local {parse <report> | check | reconcile}"


def parse(text):
    report = parse_report(text)
    print(f"Outcome: {report.outcome.value}")
    print(f"Meter ID: {report.meter_id}")
    for name, value in report.fields.items():
        print(f" - {name}: {value}")
    if report.unrecognized:
        print(f"Unrecognized keys: {', '.join(report.unrecognized)}")


def _manager():
    from backend.lib.services import init_alerts, init_store
    from backend.lib.water_meter_core.assignment import AssignmentManager

    settings = Settings.from_env()
    logging.basicConfig(level=settings.log_level)
    store = init_store(settings)
    return AssignmentManager(store, alerts=init_alerts(settings),
                             max_attempts=settings.cas_max_attempts)


def main(argv):
    load_dotenv()
    if not argv:
        print(USAGE)
        return 2
    command = argv[0]
    if command == "parse" and len(argv) == 2:
        parse(argv[1])
    elif command == "check":
        issues = _manager().check_consistency()
        print(json.dumps([i.to_dict() for i in issues], indent=2))
        return 1 if issues else 0
    elif command == "reconcile":
        report = _manager().reconcile()
        print(json.dumps(report.to_dict(), indent=2))
    else:
        print(USAGE)
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
