"""
Command line entry point.

    ragpilot ask "question" [--limit N] [--lambda L] [--directory DIR] [--no-stream]
    ragpilot serve [--host HOST] [--port PORT] [--reload]
"""

import argparse
import asyncio
import sys

import uvicorn

from . import __version__
from .config.container import setup_container
from .config.settings import Settings, get_settings
from .core.orchestrator import RAGOptions, RAGResult
from .observability.logging import get_logger, setup_logging
from .observability.metrics import setup_meter_provider
from .observability.tracing import setup_tracing

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ragpilot", description="RAG over your notes")
    parser.add_argument("--version", action="version", version=f"ragpilot {__version__}")
    parser.add_argument("--log-level", default=None, help="Override the configured log level")
    subparsers = parser.add_subparsers(dest="command", required=True)

    ask = subparsers.add_parser("ask", help="Answer a question from the knowledge base")
    ask.add_argument("question", help="The question to answer")
    ask.add_argument("--limit", type=int, default=None, help="Maximum number of sources")
    ask.add_argument(
        "--lambda", dest="lambda_", type=float, default=None, help="MMR trade-off in [0, 1]"
    )
    ask.add_argument("--directory", default=None, help="Restrict retrieval to a sub-path")
    ask.add_argument("--no-stream", action="store_true", help="Print the answer when complete")
    ask.add_argument("--progress", action="store_true", help="Report pipeline stages on stderr")

    serve = subparsers.add_parser("serve", help="Run the HTTP API server")
    serve.add_argument("--host", default=None, help="Host to bind to")
    serve.add_argument("--port", type=int, default=None, help="Port to bind to")
    serve.add_argument("--reload", action="store_true", help="Enable auto-reload")

    return parser


def _write_chunk(chunk: str) -> None:
    sys.stdout.write(chunk)
    sys.stdout.flush()


def _report_progress(stage: str, percent: int) -> None:
    print(f"[{percent:3d}%] {stage}", file=sys.stderr)


def format_sources(result: RAGResult) -> str:
    lines = ["Sources:"]
    for i, source in enumerate(result.sources, 1):
        lines.append(f"  [{i}] {source.basename} ({source.path}) similarity={source.similarity:.2f}")
    return "\n".join(lines)


async def ask(args: argparse.Namespace, settings: Settings) -> RAGResult:
    streaming = not args.no_stream
    options = RAGOptions(
        limit=args.limit or settings.pipeline.default_limit,
        lambda_=settings.pipeline.default_lambda if args.lambda_ is None else args.lambda_,
        directory=args.directory,
        streaming=streaming,
        on_chunk=_write_chunk if streaming else None,
        on_progress=_report_progress if args.progress else None,
    )

    container = setup_container(settings)
    async with container.lifespan():
        orchestrator = container.get("rag_orchestrator")
        return await orchestrator.run_rag(args.question, options)


def serve(args: argparse.Namespace, settings: Settings) -> None:
    uvicorn.run(
        "ragpilot.api.server:app",
        host=args.host or settings.api.host,
        port=args.port or settings.api.port,
        reload=args.reload or settings.api.reload,
    )


def main(argv=None):
    """Parse arguments, set up observability and run the selected command."""
    args = build_parser().parse_args(argv)
    settings = get_settings()

    setup_logging(args.log_level or settings.observability.log_level)

    tracing_manager = None
    if settings.observability.enable_tracing:
        tracing_manager = setup_tracing(
            settings.observability.service_name,
            console_export=settings.observability.console_spans,
        )

    meter_provider = None
    try:
        if args.command == "serve":
            # The server configures its own metrics in the API lifespan
            serve(args, settings)
            return

        if settings.observability.enable_metrics:
            meter_provider = setup_meter_provider(
                settings.observability.service_name,
                console_export=settings.observability.console_spans,
            )

        result = asyncio.run(ask(args, settings))
        if args.no_stream:
            print(result.answer)
        else:
            print()
        print()
        print(format_sources(result))
    finally:
        if meter_provider:
            meter_provider.shutdown()
        if tracing_manager:
            tracing_manager.shutdown()


def cli_main():
    """CLI entry point."""
    try:
        main(sys.argv[1:])
        sys.exit(0)
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        sys.exit(130)
    except Exception as e:
        logger.error(f"Command failed: {e}")
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    cli_main()
