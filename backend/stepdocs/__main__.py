"""Command-line entry point for consistency maintenance.

Usage:
    python -m stepdocs sweep
    python -m stepdocs rebuild <step_id>
    python -m stepdocs check <step_id>
    python -m stepdocs serve

Exit codes:
    0: Success / consistent
    1: Inconsistent step, failed steps in a sweep, or unknown step
    2: Step locked by another writer
"""

import argparse
import json
import logging
import sys

from stepdocs.config import settings
from stepdocs.errors import ConcurrentModification, NotFound


def _run_sweep(db) -> int:
    from stepdocs.services.document_version_service import document_version_service

    result = document_version_service.sweep(db)
    print(json.dumps({
        "rebuilt": {r.step_id: {"updated": len(r.updated_ids), "deleted": len(r.deleted_ids)} for r in result.rebuilt},
        "failed": result.failed,
    }, indent=2, sort_keys=True))
    return 1 if result.failed else 0


def _run_rebuild(db, step_id: str) -> int:
    from stepdocs.services.document_version_service import document_version_service

    report = document_version_service.rebuild(db, step_id)
    print(json.dumps({
        "step_id": report.step_id,
        "session_count": report.session_count,
        "updated_ids": report.updated_ids,
        "deleted_ids": report.deleted_ids,
        "violations": [v.describe() for v in report.violations],
    }, indent=2))
    return 0


def _run_check(db, step_id: str) -> int:
    from stepdocs.services.document_version_service import document_version_service

    report = document_version_service.check_consistency(db, step_id)
    print(json.dumps({"step_id": step_id, "consistent": report.consistent, "problems": report.problems}, indent=2))
    return 0 if report.consistent else 1


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="stepdocs", description="Step document version maintenance")
    parser.add_argument("-v", "--verbose", action="store_true", help="log at DEBUG level")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("sweep", help="rebuild every step with versioned documents")
    rebuild = sub.add_parser("rebuild", help="rebuild one step")
    rebuild.add_argument("step_id")
    check = sub.add_parser("check", help="audit one step without changing it")
    check.add_argument("step_id")
    sub.add_parser("serve", help="run the HTTP API")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "serve":
        import uvicorn

        uvicorn.run("stepdocs.main:app", host=settings.host, port=settings.port)
        return 0

    from stepdocs.database import SessionLocal, init_db

    settings.data_path.mkdir(parents=True, exist_ok=True)
    init_db(settings.db_path)
    db = SessionLocal()
    try:
        if args.command == "sweep":
            return _run_sweep(db)
        if args.command == "rebuild":
            return _run_rebuild(db, args.step_id)
        return _run_check(db, args.step_id)
    except NotFound as exc:
        print(str(exc), file=sys.stderr)
        return 1
    except ConcurrentModification as exc:
        print(str(exc), file=sys.stderr)
        return 2
    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(main())
