"""CLI tool for building, updating and querying the code index.

Usage:
    python -m coderag.rag build [--repo DIR] [--force]
    python -m coderag.rag update [--repo DIR]
    python -m coderag.rag stats [--repo DIR]
    python -m coderag.rag query "How does X work?" [--repo DIR]
"""

import argparse
import asyncio
import os
import sys
from pathlib import Path

from pydantic import ValidationError

from ..config import config, get_rag_config
from ..errors import CodeRagError
from ..llm import LangChainCompleter, SentenceTransformerEmbedder
from ..logging_config import setup_logging
from .pipeline import RAGPipeline


def _add_repo_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--repo",
        type=str,
        default=".",
        help="Repository root directory (default: current directory)",
    )
    parser.add_argument(
        "--store",
        type=str,
        default=None,
        help=f"Index directory, relative to the repository (default: {config['store_path']})",
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Build, update and query the code index"
    )
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    build_parser = subparsers.add_parser("build", help="Build the index")
    build_parser.add_argument(
        "--force",
        action="store_true",
        help="Rebuild even if an index exists",
    )
    _add_repo_args(build_parser)

    update_parser = subparsers.add_parser("update", help="Update the index incrementally")
    _add_repo_args(update_parser)

    stats_parser = subparsers.add_parser("stats", help="Show index statistics")
    _add_repo_args(stats_parser)

    query_parser = subparsers.add_parser("query", help="Ask a question about the code")
    query_parser.add_argument("question", type=str, help="Question to answer")
    _add_repo_args(query_parser)

    return parser


def _make_pipeline(repo_root: Path) -> RAGPipeline:
    # Without explicit configuration, confine filesystem access to the repo
    allowed_base = os.getenv("CODERAG_ALLOWED_BASE") or os.getenv("PROJECT_PATH") or config["allowed_base"] or repo_root
    return RAGPipeline(get_rag_config(), allowed_base=allowed_base)


async def _run(args: argparse.Namespace) -> int:
    repo_root = Path(args.repo).resolve()
    store_path = repo_root / (args.store or config["store_path"])
    pipeline = _make_pipeline(repo_root)

    if args.command == "build":
        if not args.force and pipeline.load_index(store_path) is not None:
            print(f"Index already exists at {store_path} (use --force to rebuild)")
            return 0
        print(f"Building index for: {repo_root}")
        metadata = await pipeline.index(repo_root, SentenceTransformerEmbedder(), store_path)
        print("\n✓ Index built successfully!")
        print(f"  Chunks created: {metadata.total_chunks}")
        print(f"  Tokens: {metadata.total_tokens}")
        return 0

    if args.command == "update":
        pipeline.load_index(store_path)
        print(f"Updating index for: {repo_root}")
        result = await pipeline.index_incremental(repo_root, SentenceTransformerEmbedder(), store_path)
        stats = result.stats
        print("\n✓ Index updated!" + (" (full rebuild)" if result.full_rebuild else ""))
        print(f"  Added: {stats.added}  Modified: {stats.modified}  Deleted: {stats.deleted}  Unchanged: {stats.unchanged}")
        print(f"  Total chunks: {result.metadata.total_chunks}")
        return 0

    if args.command == "stats":
        metadata = pipeline.load_index(store_path)
        status = pipeline.get_status()
        print("\n📊 Index Statistics")
        print("=" * 50)
        print(f"  Repository: {repo_root}")
        if metadata is None:
            print("  No index found")
        else:
            print(f"  Tracked files: {status['tracked_files']}")
            print(f"  Total chunks: {status['total_chunks']}")
            print(f"  Total tokens: {status['total_tokens']}")
            print(f"  Embedding dimension: {status['embedding_dimension']}")
            print(f"  Last update: {status['indexed_at']}")
        print("=" * 50)
        return 0

    if args.command == "query":
        if pipeline.load_index(store_path) is None:
            print("No index found. Run `python -m coderag.rag build` first.", file=sys.stderr)
            return 1
        result = await pipeline.query(args.question, SentenceTransformerEmbedder(), LangChainCompleter())
        print(result.answer)
        if result.sources:
            print("\nSources:")
            for source in result.sources:
                print(f"  {source}")
        return 0

    return 1


def main() -> int:
    """Main entry point for the index CLI."""
    parser = _build_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 1

    setup_logging(config["log_level"], config["log_file"])

    try:
        return asyncio.run(_run(args))
    except KeyboardInterrupt:
        print("\n\n👋 Stopped")
        return 0
    except CodeRagError as e:
        print(f"\n❌ Error: {e}", file=sys.stderr)
        return 1
    except ValidationError as e:
        print(f"\n❌ Invalid configuration: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
