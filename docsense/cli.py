"""Command-line interface for batch processing, single extraction and SLA checks.

``batch`` ingests a folder, runs it as one processing session and exports
the results to CSV. ``extract`` runs one file and prints JSON. ``sla``
prints the SLA risk of a user's open review tasks.
"""

import argparse
import csv
import json
import sys
import uuid
from pathlib import Path
from typing import Any

from docsense.ingest.loader import SUPPORTED_EXTENSIONS, content_hash
from docsense.quality.assessor import Route
from docsense.records import Document
from docsense.services import Services, build_services
from docsense.utils.config import load_config
from docsense.utils.logger import get_logger, setup_logging

logger = get_logger(__name__)

_META_COLUMNS = [
    "filename",
    "document_id",
    "status",
    "doc_type",
    "confidence_score",
    "issues",
    "review_reason",
]


def _find_documents(input_dir: Path) -> list[Path]:
    """Supported document files directly under ``input_dir``, sorted by name."""
    return sorted(
        p for p in input_dir.iterdir() if p.is_file() and p.suffix.lower() in SUPPORTED_EXTENSIONS
    )


def _ingest(services: Services, path: Path, user_id: str, doc_type: str | None) -> Document:
    content = path.read_bytes()
    return services.store.add_document(
        Document(
            id=uuid.uuid4().hex,
            user_id=user_id,
            filename=path.name,
            doc_type=doc_type,
            content=content,
            content_hash=content_hash(content),
        )
    )


def _result_row(document: Document) -> dict[str, Any]:
    data = document.extracted_data
    row: dict[str, Any] = {
        "filename": document.filename,
        "document_id": document.id,
        "status": str(document.status),
        "doc_type": document.doc_type,
        "confidence_score": document.confidence_score,
        "issues": len(data.get("issues", [])),
        "review_reason": document.review_reason,
    }
    for key, field in (data.get("fields") or {}).items():
        row[key] = field.get("value")
    return row


def process_folder(
    input_dir: Path,
    output_csv: Path,
    services: Services,
    user_id: str = "cli",
    doc_type: str | None = None,
    route: Route | None = None,
    verbose: bool = False,
) -> dict[str, int]:
    """Run every supported document in a folder as one session and export to CSV.

    Args:
        input_dir: Directory containing document files.
        output_csv: Path for the output CSV file.
        services: Wired pipeline components.
        user_id: Owner recorded on the ingested documents.
        doc_type: Schema to use; classified per document if ``None``.
        route: Explicit engine choice for every document.
        verbose: Print per-file outcomes.

    Returns:
        Counts of total, approved, needs_review and failed documents.
    """
    files = _find_documents(input_dir)
    if not files:
        logger.warning("No documents found in %s", input_dir)
        return {"total": 0, "approved": 0, "needs_review": 0, "failed": 0}

    logger.info("Found %d documents to process", len(files))
    documents = [_ingest(services, path, user_id, doc_type) for path in files]
    ids = [d.id for d in documents]
    session = services.sessions.start(user_id, ids)
    report = services.orchestrator.process_batch(ids, session_id=session.id, route=route)

    results: list[dict[str, Any]] = []
    for document in services.store.list_documents(ids=ids):
        row = _result_row(document)
        row["error"] = report.failed.get(document.id)
        results.append(row)
        if verbose:
            print(f"{document.filename}: {document.status} ({document.confidence_score})")

    _write_csv(results, output_csv)
    logger.info("Results written to %s", output_csv)

    statuses = [r["status"] for r in results]
    summary = {
        "total": len(results),
        "approved": statuses.count("approved"),
        "needs_review": statuses.count("needs_review"),
        "failed": statuses.count("failed") + len(report.failed),
    }
    _print_summary(summary, output_csv)
    return summary


def _write_csv(results: list[dict[str, Any]], output_path: Path) -> None:
    if not results:
        return

    all_keys: set[str] = set()
    for r in results:
        all_keys.update(r.keys())

    field_columns = sorted(all_keys - set(_META_COLUMNS) - {"error"})
    columns = [c for c in _META_COLUMNS if c in all_keys] + field_columns + ["error"]

    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, "w", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=columns, extrasaction="ignore")
        writer.writeheader()
        writer.writerows(results)


def _print_summary(summary: dict[str, int], output_csv: Path) -> None:
    print(f"\n{'=' * 50}")
    print("Batch Processing Complete")
    print(f"{'=' * 50}")
    print(f"Total:        {summary['total']}")
    print(f"Approved:     {summary['approved']}")
    print(f"Needs review: {summary['needs_review']}")
    print(f"Failed:       {summary['failed']}")
    print(f"Output:       {output_csv}")


def extract_single(
    file_path: Path,
    services: Services,
    doc_type: str | None = None,
    route: Route | None = None,
    user_id: str = "cli",
) -> dict[str, Any]:
    """Process one file and return its status and extracted data.

    Args:
        file_path: Path to the document file.
        services: Wired pipeline components.
        doc_type: Schema to use; classified if ``None``.
        route: Explicit engine choice.
        user_id: Owner recorded on the document.
    """
    document = _ingest(services, file_path, user_id, doc_type)
    document = services.orchestrator.process_document(document.id, route)
    return {
        "filename": document.filename,
        "document_id": document.id,
        "status": str(document.status),
        "doc_type": document.doc_type,
        "confidence_score": document.confidence_score,
        "review_reason": document.review_reason,
        "extracted_data": document.extracted_data,
    }


def evaluate_sla(user_id: str, services: Services) -> list[dict[str, Any]]:
    """SLA risk of every open review task owned by ``user_id``."""
    return [
        {
            "task_id": e.task_id,
            "document_id": e.document_id,
            "doc_type": e.doc_type,
            "elapsed_minutes": e.elapsed_minutes,
            "risk_level": str(e.risk_level),
        }
        for e in services.sla.evaluate(user_id, notify=False)
    ]


def main(argv: list[str] | None = None) -> None:
    """Parse CLI arguments and dispatch to the appropriate command.

    Args:
        argv: Command-line arguments (defaults to sys.argv).
    """
    parser = argparse.ArgumentParser(
        description="Docsense document extraction",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "-c", "--config", type=Path, default=None, help="Config file (default: configs/config.yaml)"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    batch_parser = subparsers.add_parser("batch", help="Process a folder of documents")
    batch_parser.add_argument("input_dir", type=Path, help="Input directory with documents")
    batch_parser.add_argument(
        "-o",
        "--output",
        type=Path,
        default=Path("results.csv"),
        help="Output CSV file (default: results.csv)",
    )
    batch_parser.add_argument("-u", "--user", default="cli", help="Owner of the documents")
    batch_parser.add_argument("-t", "--type", dest="doc_type", help="Document type (default: auto)")
    batch_parser.add_argument(
        "--route", choices=[r.value for r in Route], help="Force an extraction engine"
    )
    batch_parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")

    single_parser = subparsers.add_parser("extract", help="Process a single document")
    single_parser.add_argument("file", type=Path, help="Document file to process")
    single_parser.add_argument("-t", "--type", dest="doc_type", help="Document type (default: auto)")
    single_parser.add_argument(
        "--route", choices=[r.value for r in Route], help="Force an extraction engine"
    )
    single_parser.add_argument("-o", "--output", type=Path, help="Output JSON file")

    sla_parser = subparsers.add_parser("sla", help="Show SLA risk of open review tasks")
    sla_parser.add_argument("user", help="Task owner")

    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        sys.exit(0)

    config = load_config(args.config)
    setup_logging(config.log_level)
    services = build_services(config)
    route = Route(args.route) if getattr(args, "route", None) else None

    if args.command == "batch":
        if not args.input_dir.is_dir():
            print(f"Error: {args.input_dir} is not a directory", file=sys.stderr)
            sys.exit(1)
        process_folder(
            args.input_dir,
            args.output,
            services,
            user_id=args.user,
            doc_type=args.doc_type,
            route=route,
            verbose=args.verbose,
        )
    elif args.command == "extract":
        if not args.file.exists():
            print(f"Error: {args.file} does not exist", file=sys.stderr)
            sys.exit(1)
        result = extract_single(args.file, services, args.doc_type, route)
        output_str = json.dumps(result, indent=2, default=str)
        if args.output:
            args.output.parent.mkdir(parents=True, exist_ok=True)
            args.output.write_text(output_str)
            print(f"Output written to {args.output}")
        else:
            print(output_str)
    elif args.command == "sla":
        print(json.dumps(evaluate_sla(args.user, services), indent=2))


if __name__ == "__main__":
    main()
