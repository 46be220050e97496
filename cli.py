import argparse
import json
import logging

from config import load_settings
from exceptions import InconsistentLedgerError
from rest_api import PRAPI, audit_dict, classification_dict, record_dict


def recalculate_historical(
    db_path: str | None,
    yaml_path: str | None,
    user_id: int | None = None,
    exercise_id: int | None = None,
    dry_run: bool = False,
) -> dict:
    """Rebuild PR ledgers from stored lift logs and print a summary."""
    api = PRAPI(db_path=db_path, yaml_path=yaml_path)
    if dry_run:
        print("DRY RUN: no changes will be written")
    summary = api.recalculator.recalculate_historical(user_id, exercise_id, dry_run)
    print(
        f"Processed {summary['processed']} lift logs in {summary['timelines']} timelines, "
        f"{summary['pr_lift_logs']} flagged as PR"
    )
    if summary["errors"]:
        print(f"Errors: {summary['errors']}")
        for failure in summary["failed"]:
            print(
                f"  user {failure['user_id']} exercise {failure['exercise_id']}: "
                f"{failure['error']}"
            )
    return summary


def show_records(db_path: str | None, yaml_path: str | None, user_id: int, exercise_id: int) -> None:
    api = PRAPI(db_path=db_path, yaml_path=yaml_path)
    for record in api.records.current_records(user_id, exercise_id):
        print(json.dumps(record_dict(record)))


def show_chain(
    db_path: str | None,
    yaml_path: str | None,
    user_id: int,
    exercise_id: int,
    pr_type: str,
    rep_count: int | None = None,
    weight: float | None = None,
) -> None:
    api = PRAPI(db_path=db_path, yaml_path=yaml_path)
    for record in api.records.chain(user_id, exercise_id, pr_type, rep_count, weight):
        print(json.dumps(record_dict(record)))


def show_audit(db_path: str | None, yaml_path: str | None, lift_log_id: int) -> None:
    api = PRAPI(db_path=db_path, yaml_path=yaml_path)
    for entry in api.audit.for_lift_log(lift_log_id):
        print(json.dumps(audit_dict(entry)))


def explain(db_path: str | None, yaml_path: str | None, lift_log_id: int) -> None:
    api = PRAPI(db_path=db_path, yaml_path=yaml_path)
    result = api.detector.classify_lift_log(lift_log_id)
    print(json.dumps(classification_dict(result), indent=2))


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Personal record maintenance commands")
    parser.add_argument("--db", default=None)
    parser.add_argument("--yaml", default=None)
    parser.add_argument("--log-level", default=None)
    sub = parser.add_subparsers(dest="cmd", required=True)

    hist = sub.add_parser("recalculate-historical")
    hist.add_argument("--user", type=int, default=None)
    hist.add_argument("--exercise", type=int, default=None)
    hist.add_argument("--dry-run", action="store_true")

    rec = sub.add_parser("records")
    rec.add_argument("--user", type=int, required=True)
    rec.add_argument("--exercise", type=int, required=True)

    chain = sub.add_parser("chain")
    chain.add_argument("--user", type=int, required=True)
    chain.add_argument("--exercise", type=int, required=True)
    chain.add_argument("--type", dest="pr_type", required=True)
    chain.add_argument("--reps", type=int, default=None)
    chain.add_argument("--weight", type=float, default=None)

    audit = sub.add_parser("audit")
    audit.add_argument("--lift-log", type=int, required=True)

    exp = sub.add_parser("explain")
    exp.add_argument("--lift-log", type=int, required=True)

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=(args.log_level or load_settings(args.yaml).log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.cmd == "recalculate-historical":
        summary = recalculate_historical(
            args.db, args.yaml, args.user, args.exercise, args.dry_run
        )
        return 1 if summary["errors"] else 0
    elif args.cmd == "records":
        show_records(args.db, args.yaml, args.user, args.exercise)
    elif args.cmd == "chain":
        try:
            show_chain(
                args.db, args.yaml, args.user, args.exercise, args.pr_type, args.reps, args.weight
            )
        except InconsistentLedgerError as e:
            print(f"Inconsistent ledger: {e}")
            return 1
    elif args.cmd == "audit":
        show_audit(args.db, args.yaml, args.lift_log)
    elif args.cmd == "explain":
        try:
            explain(args.db, args.yaml, args.lift_log)
        except ValueError as e:
            print(str(e))
            return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
