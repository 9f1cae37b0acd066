"""CLI entry point for the shift marketplace core."""

import argparse
import json
import logging
import sys
from pathlib import Path

from shiftbook.checkin.qr import QRSigner, render_qr_png
from shiftbook.checkin.service import CheckinService
from shiftbook.core.config import Settings
from shiftbook.core.db import get_job, get_job_qr, get_profile, init_db
from shiftbook.core.errors import ConfigurationError
from shiftbook.matching.qualification import (
    evaluate_worker_qualification,
    get_qualification_feedback,
)
from shiftbook.reliability.cancellation import CancellationService
from shiftbook.reliability.ledger import ReliabilityLedger
from shiftbook.reliability.penalty import get_worker_penalty


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        default="config/settings.yaml",
        help="Path to settings YAML file (default: config/settings.yaml, optional)",
    )
    common.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose (DEBUG) logging",
    )

    parser = argparse.ArgumentParser(
        description="Shift marketplace core - qualification, penalties and QR check-in",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init-db", parents=[common], help="Create the database tables")

    penalty_parser = subparsers.add_parser(
        "penalty", parents=[common], help="Show the worker penalty for a cancellation",
    )
    penalty_parser.add_argument(
        "--hours", type=float, required=True,
        help="Hours until the shift starts (negative once started)",
    )

    qualify_parser = subparsers.add_parser(
        "qualify", parents=[common], help="Evaluate Instant Book for a worker and job",
    )
    qualify_parser.add_argument("--worker", required=True, help="Worker ID")
    qualify_parser.add_argument("--job", required=True, help="Job ID")

    issue_parser = subparsers.add_parser(
        "issue-qr", parents=[common], help="Issue (or reissue) the check-in QR for a job",
    )
    issue_parser.add_argument("--job", required=True, help="Job ID")
    issue_parser.add_argument("--owner", required=True, help="Owner ID")
    issue_parser.add_argument("--png", help="Also write the QR image to this path")

    validate_parser = subparsers.add_parser(
        "validate-qr", parents=[common], help="Validate scanned QR data",
    )
    validate_parser.add_argument(
        "--data", required=True,
        help="Raw QR string, or @path to read it from a file",
    )
    validate_parser.add_argument(
        "--secret-key", help="Expected job secret key (default: look it up in the DB)",
    )

    cancel_parser = subparsers.add_parser(
        "cancel", parents=[common], help="Cancel an application",
    )
    cancel_parser.add_argument("--application", required=True, help="Application ID")
    cancel_parser.add_argument("--actor", required=True, help="Worker or owner ID")
    cancel_parser.add_argument(
        "--as", dest="role", choices=["worker", "owner"], default="worker",
        help="Who is cancelling (default: worker)",
    )
    cancel_parser.add_argument("--reason", help="Optional cancellation reason")

    return parser.parse_args(argv)


def setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def load_settings(path: str) -> Settings:
    """Load YAML settings if the file exists, then apply SHIFTBOOK_* overrides."""
    settings = Settings.from_yaml(path) if Path(path).exists() else Settings()
    return settings.with_env_overrides()


def _print_json(data: object) -> None:
    print(json.dumps(data, indent=2, default=str))


def cmd_penalty(args: argparse.Namespace) -> int:
    _print_json(get_worker_penalty(args.hours).model_dump(mode="json"))
    return 0


def cmd_qualify(args: argparse.Namespace, settings: Settings) -> int:
    conn = init_db(settings.database.path)
    try:
        worker = get_profile(conn, args.worker)
        job = get_job(conn, args.job)
    finally:
        conn.close()
    if worker is None or job is None:
        print("Error: worker or job not found", file=sys.stderr)
        return 1
    qualification = evaluate_worker_qualification(
        worker, job.requirements, settings.qualification.verification_policy
    )
    _print_json(qualification.model_dump())
    print(get_qualification_feedback(qualification))
    return 0


def cmd_issue_qr(args: argparse.Namespace, settings: Settings) -> int:
    conn = init_db(settings.database.path)
    try:
        signer = QRSigner.from_config(settings.checkin)
        ledger = ReliabilityLedger(conn, settings.reliability)
        service = CheckinService(conn, signer, ledger, settings)
        generated = service.issue_job_qr(args.job, args.owner)
    finally:
        conn.close()
    if generated is None:
        print("Error: job not found or not owned by this owner", file=sys.stderr)
        return 1
    if args.png:
        Path(args.png).write_bytes(render_qr_png(generated.qr_data))
        print(f"QR image written to {args.png}")
    print(generated.qr_data)
    return 0


def cmd_validate_qr(args: argparse.Namespace, settings: Settings) -> int:
    data = args.data
    if data.startswith("@"):
        data = Path(data[1:]).read_text().strip()
    signer = QRSigner.from_config(settings.checkin)
    secret_key = args.secret_key
    if secret_key is None:
        first = signer.validate_job_qr(data)
        if first.valid and first.job_id:
            conn = init_db(settings.database.path)
            try:
                stored = get_job_qr(conn, first.job_id)
            finally:
                conn.close()
            secret_key = stored["secret_key"] if stored is not None else ""
    result = signer.validate_job_qr(data, secret_key)
    _print_json(result.model_dump(mode="json"))
    return 0 if result.valid else 1


def cmd_cancel(args: argparse.Namespace, settings: Settings) -> int:
    conn = init_db(settings.database.path)
    try:
        service = CancellationService(
            conn, ReliabilityLedger(conn, settings.reliability), settings.schedule
        )
        if args.role == "owner":
            result = service.cancel_by_owner(args.application, args.actor, args.reason)
        else:
            result = service.cancel_by_worker(args.application, args.actor, args.reason)
    finally:
        conn.close()
    _print_json(result.model_dump(mode="json"))
    return 0 if result.success else 1


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    setup_logging(args.verbose)

    try:
        settings = load_settings(args.config)
    except (FileNotFoundError, ValueError) as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        sys.exit(1)

    try:
        if args.command == "init-db":
            init_db(settings.database.path).close()
            print(f"Database ready at {settings.database.path}")
            code = 0
        elif args.command == "penalty":
            code = cmd_penalty(args)
        elif args.command == "qualify":
            code = cmd_qualify(args, settings)
        elif args.command == "issue-qr":
            code = cmd_issue_qr(args, settings)
        elif args.command == "validate-qr":
            code = cmd_validate_qr(args, settings)
        else:
            code = cmd_cancel(args, settings)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(2)

    sys.exit(code)


if __name__ == "__main__":
    main()
