"""Command-line entry point for the health-record RAG pipeline.

Ingests Apple Health exports for a user and answers questions about the
ingested data with a retrieval-augmented chat model.
"""

import argparse
import asyncio
import json
import logging
import os
import sys
import uuid

from dotenv import load_dotenv

from healthrag.config import Settings
from healthrag.exceptions import HealthRagError
from healthrag.models import SearchOptions
from healthrag.rag.parser import decode_export
from healthrag.rag.pipeline import Services, build_services

logger = logging.getLogger("healthrag")


def get_settings() -> Settings:
    """Load application settings.

    Returns:
        Settings instance loaded from environment variables.
    """
    load_dotenv()
    return Settings.from_env()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="healthrag", description="Embed health exports and ask questions about them."
    )
    sub = parser.add_subparsers(dest="command", required=True)

    ingest = sub.add_parser("ingest", help="Parse, chunk and embed an export file")
    ingest.add_argument("--user", required=True, help="Owner of the data")
    ingest.add_argument("--document", help="Import identifier (random when omitted)")
    ingest.add_argument("--file", required=True, help="Export file (.xml, .json or .csv)")
    ingest.add_argument("--upload", action="store_true", help="Store the export in COS first")
    ingest.add_argument("--strict", action="store_true", help="Fail on the first invalid record")
    ingest.add_argument(
        "--isolate-failures", action="store_true", help="Continue past failed chunks"
    )
    ingest.add_argument(
        "--keep-existing", action="store_true", help="Do not delete earlier embeddings first"
    )

    ask = sub.add_parser("ask", help="Answer a question from the user's health data")
    ask.add_argument("--user", required=True)
    ask.add_argument("question")
    ask.add_argument("--limit", type=int, help="Number of chunks to retrieve")
    ask.add_argument("--threshold", type=float, help="Minimum similarity")
    ask.add_argument("--metric", action="append", dest="metrics", help="Restrict to a metric type")
    ask.add_argument("--since", help="Earliest record time (ISO-8601)")
    ask.add_argument("--until", help="Latest record time (ISO-8601)")
    ask.add_argument("--stream", action="store_true", help="Print the answer as it is generated")
    ask.add_argument("--show-prompt", action="store_true", help="Print the assembled prompt")

    delete = sub.add_parser("delete", help="Delete a user's embeddings")
    delete.add_argument("--user", required=True)
    delete.add_argument("--document", help="Only this import")

    sub.add_parser("health", help="Check provider and vector store connectivity")
    return parser


async def run_ingest(services: Services, args: argparse.Namespace) -> int:
    document_id = args.document or uuid.uuid4().hex
    filename = os.path.basename(args.file)
    with open(args.file, "rb") as f:
        data = f.read()

    def progress(processed: int, total: int) -> None:
        print(f"  {processed}/{total} chunks stored", file=sys.stderr)

    if args.upload:
        source_uri = await services.ingestion.upload_export(
            args.user, document_id, filename, data
        )
        result = await services.ingestion.process_document_embeddings(
            document_id,
            args.user,
            source_uri=source_uri,
            filename=filename,
            replace_existing=not args.keep_existing,
            isolate_failures=args.isolate_failures,
            strict=args.strict,
            progress_callback=progress,
        )
    else:
        result = await services.ingestion.process_document_embeddings(
            document_id,
            args.user,
            content=decode_export(data, filename),
            filename=filename,
            replace_existing=not args.keep_existing,
            isolate_failures=args.isolate_failures,
            strict=args.strict,
            progress_callback=progress,
        )
    print(result.model_dump_json(indent=2))
    return 1 if result.failed_chunks else 0


async def run_ask(services: Services, args: argparse.Namespace) -> int:
    options = services.rag.default_options()
    updates = {
        "limit": args.limit,
        "similarity_threshold": args.threshold,
        "metric_types": args.metrics,
        "time_range_start": args.since,
        "time_range_end": args.until,
    }
    options = SearchOptions(
        **{**options.model_dump(), **{k: v for k, v in updates.items() if v is not None}}
    )
    rag = await services.rag.create_rag_enhanced_prompt(args.user, args.question, options)
    if args.show_prompt:
        print(rag.enhanced_prompt, file=sys.stderr)

    if args.stream:
        async for delta in services.chat.stream(
            args.question, conversation_id=args.user, system_prompt=rag.enhanced_prompt
        ):
            print(delta, end="", flush=True)
        print()
    else:
        answer = await services.chat.send(
            args.question, conversation_id=args.user, system_prompt=rag.enhanced_prompt
        )
        print(answer)
    return 0


async def run_delete(services: Services, args: argparse.Namespace) -> int:
    before = await services.ingestion.count_embedding_documents(args.user, args.document)
    await services.ingestion.delete_embedding_documents(args.user, args.document)
    print(f"Deleted {before} embedding documents")
    return 0


async def run_health(services: Services, args: argparse.Namespace) -> int:
    status = await services.rag.health_check()
    print(json.dumps(status, indent=2))
    return 0 if status["status"] == "healthy" else 1


COMMANDS = {
    "ingest": run_ingest,
    "ask": run_ask,
    "delete": run_delete,
    "health": run_health,
}


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the command-line interface."""
    args = build_parser().parse_args(argv)
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        services = build_services(settings)
        return asyncio.run(COMMANDS[args.command](services, args))
    except HealthRagError as e:
        logger.error(str(e))
        if e.processed_chunks is not None:
            logger.error(f"{e.processed_chunks} chunks were stored before the failure")
        return 1


if __name__ == "__main__":
    sys.exit(main())
