"""CLI entrypoint for the feedback clustering and verification engine."""

import argparse
import json
import logging
import sys
from datetime import UTC, date, datetime, time

from voc_loop import __version__
from voc_loop.config import Settings
from voc_loop.errors import (
    ExternalCapabilityError,
    InsufficientDataError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from voc_loop.io import (
    FeedbackDatasetError,
    UnitLockError,
    iter_feedback_jsonl,
    save_json,
)
from voc_loop.models import OpenAIJsonClient
from voc_loop.pipeline import (
    LLMClusteringCapability,
    PeriodError,
    build_cluster_summary,
    build_verification_summary,
    create_verification_config,
    get_verification_history,
    quick_create_verification_config,
    resolve_period,
    run_all_clustering,
    run_all_verifications,
    run_clustering_unit,
    run_verification_unit,
)
from voc_loop.schemas import ISSUE_TYPES
from voc_loop.store import ClusterStore, Database, FeedbackStore, VerificationStore


def _parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid date '{value}', expected YYYY-MM-DD.") from exc


def _add_period_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--start-date", type=_parse_date, default=None, help="Explicit range start.")
    parser.add_argument("--end-date", type=_parse_date, default=None, help="Explicit range end.")
    parser.add_argument("--week", type=int, default=None, help="ISO week number.")
    parser.add_argument("--month", type=int, default=None, help="Calendar month (1-12).")
    parser.add_argument("--year", type=int, default=None, help="Year for --week or --month.")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="voc-loop",
        description="Issue clustering and closed-loop fix verification for user feedback",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--config",
        type=str,
        default="configs/default.yaml",
        help="Path to YAML config file (default: configs/default.yaml)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity (default: WARNING)",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print machine-readable JSON instead of text.",
    )

    sub = parser.add_subparsers(dest="command")

    sub.add_parser("info", help="Show current configuration")

    import_parser = sub.add_parser("import-feedback", help="Load analyzed feedback from JSONL.")
    import_parser.add_argument("--input", type=str, required=True, help="Path to feedback JSONL.")

    cluster_parser = sub.add_parser("cluster", help="Cluster one app and scope for a period.")
    cluster_parser.add_argument("--app-id", type=str, required=True)
    cluster_parser.add_argument("--scope", type=str, default="all", help="Category or 'all'.")
    _add_period_arguments(cluster_parser)

    cluster_all_parser = sub.add_parser(
        "cluster-all",
        help="Cluster every app with analyzed feedback across the configured scopes.",
    )
    cluster_all_parser.add_argument(
        "--scope",
        action="append",
        default=None,
        help="Scope to run (repeatable). Defaults to configured clustering_scopes.",
    )
    cluster_all_parser.add_argument(
        "--report-json",
        type=str,
        default=None,
        help="Optional path to write the batch tally as JSON.",
    )
    _add_period_arguments(cluster_all_parser)

    groups_parser = sub.add_parser("groups", help="List stored review groups.")
    groups_parser.add_argument("--app-id", type=str, default=None)
    groups_parser.add_argument("--scope", type=str, default=None)
    groups_parser.add_argument("--period-key", type=str, default=None)

    create_parser = sub.add_parser("verify-create", help="Create a verification config.")
    create_parser.add_argument("--app-id", type=str, required=True)
    create_parser.add_argument("--issue-type", type=str, required=True, choices=sorted(ISSUE_TYPES))
    create_parser.add_argument(
        "--issue-value",
        type=str,
        required=True,
        help="Category name, keyword, or review group id.",
    )
    create_parser.add_argument(
        "--go-live-date",
        type=_parse_date,
        default=None,
        help="Quick mode: two-week baseline before this date, open-ended verification after.",
    )
    create_parser.add_argument("--baseline-start", type=_parse_date, default=None)
    create_parser.add_argument("--baseline-end", type=_parse_date, default=None)
    create_parser.add_argument("--verify-start", type=_parse_date, default=None)
    create_parser.add_argument("--verify-end", type=_parse_date, default=None)
    create_parser.add_argument("--optimization", type=str, default="", help="What was changed.")
    create_parser.add_argument("--expected-reduction", type=float, default=None)
    create_parser.add_argument("--created-by", type=str, default=None)

    run_parser = sub.add_parser("verify-run", help="Run one verification config.")
    run_parser.add_argument("--config-id", type=int, required=True)

    run_all_parser = sub.add_parser("verify-run-all", help="Run every verification config.")
    run_all_parser.add_argument("--app-id", type=str, default=None)
    run_all_parser.add_argument(
        "--report-json",
        type=str,
        default=None,
        help="Optional path to write the batch tally as JSON.",
    )

    history_parser = sub.add_parser("verify-history", help="Show results of one config.")
    history_parser.add_argument("--config-id", type=int, required=True)

    summary_parser = sub.add_parser("summary", help="Show cluster and verification rollups.")
    summary_parser.add_argument("--app-id", type=str, required=True)
    summary_parser.add_argument("--year", type=int, default=None)
    summary_parser.add_argument("--month", type=int, default=None)
    summary_parser.add_argument("--top-k", type=int, default=None)

    usage_parser = sub.add_parser("usage", help="Show recorded LLM token usage and estimated cost.")
    usage_parser.add_argument(
        "--since",
        type=_parse_date,
        default=None,
        help="Only count usage recorded on or after this date.",
    )

    return parser


def _print_json(payload: dict | list[dict]) -> None:
    """Pretty-print JSON payload."""

    print(json.dumps(payload, indent=2, ensure_ascii=True, default=str))


def _open_stores(settings: Settings) -> tuple[FeedbackStore, ClusterStore, VerificationStore]:
    database = Database(settings.database_path)
    return FeedbackStore(database), ClusterStore(database), VerificationStore(database)


def _build_capability(settings: Settings) -> LLMClusteringCapability:
    if not settings.openai_api_key.strip():
        print("OPENAI_API_KEY is not set; clustering requires an LLM endpoint.")
        sys.exit(2)
    llm_client = OpenAIJsonClient(
        api_key=settings.openai_api_key,
        model=settings.openai_model,
        base_url=settings.resolved_openai_base_url() or None,
        temperature=settings.openai_temperature,
        timeout_seconds=settings.llm_timeout_seconds,
        max_retries=settings.client_max_retries,
        backoff_seconds=settings.client_backoff_seconds,
        input_price_per_million=settings.llm_input_price_per_million,
        output_price_per_million=settings.llm_output_price_per_million,
    )
    return LLMClusteringCapability(llm_client, min_cluster_size=settings.min_cluster_size)


def _resolve_period_args(args: argparse.Namespace):
    try:
        return resolve_period(
            start_date=args.start_date,
            end_date=args.end_date,
            week=args.week,
            month=args.month,
            year=args.year,
        )
    except PeriodError as exc:
        print(f"Invalid period: {exc}")
        sys.exit(1)


def cmd_info(settings: Settings) -> None:
    print(f"voc-loop v{__version__}")
    print(f"  OpenAI model:      {settings.openai_model}")
    print(f"  OpenAI base URL:   {settings.resolved_openai_base_url() or '(default OpenAI)'}")
    print(f"  Key source:        {settings.resolved_openai_key_source()}")
    print(f"  OpenAI temp:       {settings.openai_temperature}")
    print(f"  LLM timeout (s):   {settings.llm_timeout_seconds}")
    print(f"  Client retries:    {settings.client_max_retries}")
    print(f"  Backoff seconds:   {settings.client_backoff_seconds}")
    print(
        f"  Price per 1M tok:  {settings.llm_input_price_per_million} in, "
        f"{settings.llm_output_price_per_million} out"
    )
    print(f"  Min cluster size:  {settings.min_cluster_size}")
    print(f"  Max reviews:       {settings.max_reviews}")
    print(f"  Snippet chars:     {settings.snippet_chars}")
    print(f"  Scopes:            {', '.join(settings.clustering_scopes)}")
    print(f"  Summary top-k:     {settings.summary_top_k}")
    print(f"  Database:          {settings.database_path}")
    print(f"  Lock dir:          {settings.lock_dir or '(disabled)'}")


def cmd_import_feedback(settings: Settings, args: argparse.Namespace) -> None:
    feedback, _, _ = _open_stores(settings)
    written = 0
    try:
        for chunk in iter_feedback_jsonl(args.input):
            written += feedback.upsert_many(chunk)
    except FeedbackDatasetError as exc:
        print(f"Feedback import failed after {written} records: {exc}")
        sys.exit(1)
    print(f"Imported {written} feedback records from {args.input}.")


def cmd_cluster(settings: Settings, args: argparse.Namespace) -> None:
    period = _resolve_period_args(args)
    feedback, cluster_store, _ = _open_stores(settings)
    capability = _build_capability(settings)
    try:
        result = run_clustering_unit(
            app_id=args.app_id,
            scope=args.scope,
            period=period,
            feedback=feedback,
            cluster_store=cluster_store,
            capability=capability,
            min_cluster_size=settings.min_cluster_size,
            max_reviews=settings.max_reviews,
            snippet_chars=settings.snippet_chars,
            lock_dir=settings.lock_dir,
        )
    except InsufficientDataError as exc:
        print(f"Skipped: {exc}")
        return
    except UnitLockError as exc:
        print(f"Could not acquire unit lock: {exc}")
        sys.exit(3)
    except (ExternalCapabilityError, PersistenceError) as exc:
        print(f"Clustering failed; previous groups kept: {exc}")
        sys.exit(1)

    if args.json:
        _print_json({"period_key": period.period_key, **result.to_dict()})
        return
    print(f"Clustered {args.app_id} / {args.scope} / {period.period_key} ({period.label()})")
    print(f"  Eligible feedback: {result.eligible_count}")
    print(f"  Submitted:         {result.submitted_count}")
    print(f"  Groups:            {len(result.groups)}")
    print(f"  Residual:          {result.residual_count}")
    print(f"  Tokens:            {result.usage.total_tokens} (~${result.usage.estimated_cost:.4f})")
    for group in result.groups:
        print(f"    #{group.rank} {group.title} ({group.review_count}, {group.percentage:.2f}%)")


def cmd_cluster_all(settings: Settings, args: argparse.Namespace) -> None:
    period = _resolve_period_args(args)
    feedback, cluster_store, _ = _open_stores(settings)
    capability = _build_capability(settings)
    batch = run_all_clustering(
        period=period,
        feedback=feedback,
        cluster_store=cluster_store,
        capability=capability,
        scopes=args.scope or settings.clustering_scopes,
        min_cluster_size=settings.min_cluster_size,
        max_reviews=settings.max_reviews,
        snippet_chars=settings.snippet_chars,
        lock_dir=settings.lock_dir,
    )
    _report_batch(batch.to_dict(), args)
    if batch.failed:
        sys.exit(1)


def _report_batch(payload: dict, args: argparse.Namespace) -> None:
    if args.report_json:
        report_path = save_json(args.report_json, payload)
        print(f"Report JSON: {report_path}")
    if args.json:
        _print_json(payload)
        return
    print(f"{payload['kind'].capitalize()} batch {payload['run_id']}")
    print(f"  Success: {payload['success']}")
    print(f"  Skipped: {payload['skipped']}")
    print(f"  Failed:  {payload['failed']}")
    if payload["usage"]["request_count"]:
        usage = payload["usage"]
        print(f"  Tokens:  {usage['total_tokens']} (~${usage['estimated_cost']:.4f})")
    for unit in payload["units"]:
        if unit["outcome"] != "success":
            print(f"    - {unit['unit']} [{unit['outcome']}] {unit['detail']}")


def cmd_groups(settings: Settings, args: argparse.Namespace) -> None:
    _, cluster_store, _ = _open_stores(settings)
    groups = cluster_store.list_groups(
        app_id=args.app_id,
        scope=args.scope,
        period_key=args.period_key,
    )
    if args.json:
        _print_json([group.model_dump(mode="json") for group in groups])
        return
    if not groups:
        print("No review groups found.")
        return
    for group in groups:
        print(
            f"[{group.id}] {group.app_id} / {group.scope} / {group.period_key} "
            f"#{group.rank} {group.title} ({group.review_count}, {group.percentage:.2f}%)"
        )


def cmd_verify_create(settings: Settings, args: argparse.Namespace) -> None:
    _, cluster_store, store = _open_stores(settings)
    common = {
        "store": store,
        "cluster_store": cluster_store,
        "app_id": args.app_id,
        "issue_type": args.issue_type,
        "issue_value": args.issue_value,
        "optimization_desc": args.optimization,
        "expected_reduction": args.expected_reduction,
        "created_by": args.created_by,
    }
    try:
        if args.go_live_date is not None:
            config = quick_create_verification_config(go_live_date=args.go_live_date, **common)
        else:
            missing = [
                name
                for name in ("baseline_start", "baseline_end", "verify_start")
                if getattr(args, name) is None
            ]
            if missing:
                print(
                    "Provide --go-live-date, or all of --baseline-start, --baseline-end "
                    f"and --verify-start (missing: {', '.join(missing)})."
                )
                sys.exit(1)
            config = create_verification_config(
                baseline_start=args.baseline_start,
                baseline_end=args.baseline_end,
                verify_start=args.verify_start,
                verify_end=args.verify_end,
                **common,
            )
    except ValidationError as exc:
        print(f"Invalid verification config: {exc}")
        sys.exit(1)

    if args.json:
        _print_json(config.model_dump(mode="json"))
        return
    print(f"Created verification config {config.id}.")
    print(f"  Issue:        {config.issue_type}={config.issue_value}")
    print(f"  Baseline:     {config.baseline_start} ~ {config.baseline_end}")
    print(f"  Verification: {config.verify_start} ~ {config.verify_end or '(open)'}")


def cmd_verify_run(settings: Settings, args: argparse.Namespace) -> None:
    feedback, cluster_store, store = _open_stores(settings)
    try:
        result = run_verification_unit(
            args.config_id,
            feedback=feedback,
            store=store,
            cluster_store=cluster_store,
        )
    except NotFoundError as exc:
        print(str(exc))
        sys.exit(1)
    except PersistenceError as exc:
        print(f"Verification result could not be saved: {exc}")
        sys.exit(1)

    if args.json:
        _print_json(result.model_dump(mode="json"))
        return
    print(f"Config {args.config_id}: {result.summary}")


def cmd_verify_run_all(settings: Settings, args: argparse.Namespace) -> None:
    feedback, cluster_store, store = _open_stores(settings)
    batch = run_all_verifications(
        feedback=feedback,
        store=store,
        cluster_store=cluster_store,
        app_id=args.app_id,
    )
    _report_batch(batch.to_dict(), args)
    if batch.failed:
        sys.exit(1)


def cmd_verify_history(settings: Settings, args: argparse.Namespace) -> None:
    _, _, store = _open_stores(settings)
    try:
        results = get_verification_history(store, args.config_id)
    except NotFoundError as exc:
        print(str(exc))
        sys.exit(1)

    if args.json:
        _print_json([result.model_dump(mode="json") for result in results])
        return
    if not results:
        print(f"Config {args.config_id} has not been run yet.")
        return
    for result in results:
        print(f"  {result.verify_date.isoformat()} {result.conclusion:<9} {result.summary}")


def cmd_summary(settings: Settings, args: argparse.Namespace) -> None:
    _, cluster_store, store = _open_stores(settings)
    today = datetime.now(UTC).date()
    if args.month is not None and not 1 <= args.month <= 12:
        print(f"Month must be within 1..12, got {args.month}.")
        sys.exit(1)
    clusters = build_cluster_summary(
        cluster_store=cluster_store,
        app_id=args.app_id,
        year=args.year or today.year,
        month=args.month or today.month,
        top_k=args.top_k or settings.summary_top_k,
    )
    verifications = build_verification_summary(store=store, app_id=args.app_id)

    if args.json:
        _print_json({"clusters": clusters, "verifications": verifications})
        return
    print(f"{args.app_id} {clusters['period_key']}")
    if not clusters["by_scope"]:
        print("  No clustering runs for this month.")
    for scope, block in clusters["by_scope"].items():
        last_run = block["last_run"]
        outcome = last_run["outcome"] if last_run else "never run"
        print(f"  [{scope}] {block['total_groups']} groups, {block['total_reviews']} reviews ({outcome})")
        for group in block["groups"]:
            print(f"    #{group['rank']} {group['title']} ({group['count']}, {group['percentage']:.2f}%)")
    print("  Verifications:")
    if not verifications:
        print("    none")
    for row in verifications:
        print(f"    [{row['id']}] {row['issue_type']}={row['issue_value']}: {row['conclusion_text']}")


def cmd_usage(settings: Settings, args: argparse.Namespace) -> None:
    _, cluster_store, _ = _open_stores(settings)
    since = datetime.combine(args.since, time.min, tzinfo=UTC) if args.since else None
    totals = cluster_store.usage_totals(since=since)

    if args.json:
        _print_json(totals)
        return
    if not totals:
        print("No LLM usage recorded.")
        return
    for operation, row in totals.items():
        print(
            f"  {operation}: {row['runs']} runs, {row['request_count']} requests, "
            f"{row['total_tokens']} tokens (~${row['estimated_cost']:.4f})"
        )


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    settings = Settings.from_yaml(args.config)

    if args.command == "info":
        cmd_info(settings)
    elif args.command == "import-feedback":
        cmd_import_feedback(settings, args)
    elif args.command == "cluster":
        cmd_cluster(settings, args)
    elif args.command == "cluster-all":
        cmd_cluster_all(settings, args)
    elif args.command == "groups":
        cmd_groups(settings, args)
    elif args.command == "verify-create":
        cmd_verify_create(settings, args)
    elif args.command == "verify-run":
        cmd_verify_run(settings, args)
    elif args.command == "verify-run-all":
        cmd_verify_run_all(settings, args)
    elif args.command == "verify-history":
        cmd_verify_history(settings, args)
    elif args.command == "summary":
        cmd_summary(settings, args)
    elif args.command == "usage":
        cmd_usage(settings, args)
    else:
        parser.print_help()
        sys.exit(0)


if __name__ == "__main__":
    main()
