#!/usr/bin/env python3
"""
Command-line entry point: search, add, remove, import and destroy a store,
or serve the search tool over HTTP or MCP.
"""

import argparse
import json
import sys
import time

from .core import config
from .core.errors import RecallError
from .core.ingest import IngestionPipeline
from .core.search_service import search_text


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="recall",
        description="Semantic search over a local vector database",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s --nuke
  %(prog)s --import "test.tsv"
  %(prog)s --add 'The quick brown fox jumps over the lazy dog|Fox|{"foo":"bar"}'
  %(prog)s --query "Un animal saute par-dessus un autre animal" --limit 2

Environment variables:
- DB_PATH=./data/vector.db (database location, overridden by --db)
- EMBED_PROVIDER=sentence-transformers|hash
- EMBED_CACHE=true|false (cache embeddings beside the database)
        """
    )

    parser.add_argument("--query", "-q", metavar="TEXT", help="search")
    parser.add_argument("--limit", type=int, default=config.DEFAULT_RESULTS,
                        help="limit number of results (used with --query)")
    parser.add_argument("--add", metavar="'input|result|{json}'", help="add data")
    parser.add_argument("--remove", metavar="ID", help="remove data")
    parser.add_argument("--nuke", action="store_true", help="destroy database")
    parser.add_argument("--db", metavar="FILE_NAME", help="database file (SQLite)")
    parser.add_argument("--import", dest="import_file", metavar="FILE",
                        help="import from CSV or TSV w/ columns: 1. input 2. result 3. and remaining columns are additional data")
    parser.add_argument("--input-header", help="when used with --import designates specific header column as input")
    parser.add_argument("--result-header", help="when used with --import designates specific header column as result")
    parser.add_argument("--json", dest="json_file", metavar="FILE_NAME",
                        help='import from file which has one json object per line: {"input":"", "result":"", "data":{}}')
    parser.add_argument("--rebuild-index", action="store_true", help="rebuild the vector index from stored records")
    parser.add_argument("--serve", action="store_true", help="run the HTTP tool surface")
    parser.add_argument("--host", default=config.API_HOST, help="host for --serve")
    parser.add_argument("--port", type=int, default=config.API_PORT, help="port for --serve")
    parser.add_argument("--mcp", action="store_true", help="run as MCP server over stdio")

    return parser


def parse_add_argument(value: str):
    """Split 'input|result|{json}' into its parts; data falls back to {} on bad JSON."""
    parts = value.split("|", 2)
    input_text = parts[0] if parts else ""
    result = parts[1] if len(parts) > 1 else ""
    data = {}
    if len(parts) > 2 and parts[2]:
        try:
            data = json.loads(parts[2])
        except json.JSONDecodeError:
            data = {}
        if not isinstance(data, dict):
            data = {}
    return input_text, result, data


def _progress(batch_number, total_batches, count):
    if total_batches:
        print(f"Adding batch {batch_number} of {total_batches} ({count} items)")
    else:
        print(f"Adding batch {batch_number} ({count} items)")


def run(args, parser) -> int:
    db_path = args.db or config.DB_PATH

    if args.nuke:
        from .core import db
        db.nuke(db_path)
        print("Nuked.")
        return 0

    if args.serve:
        import uvicorn
        from .api.main import create_app
        app = create_app(store=config.open_store(db_path))
        uvicorn.run(app, host=args.host, port=args.port)
        return 0

    if args.mcp:
        from .api.mcp_server import create_mcp_server
        server = create_mcp_server(config.open_store(db_path), config.get_embedding_provider(db_path=db_path))
        # stdout carries the protocol; logs go to stderr
        server.run()
        return 0

    if not any([args.query, args.add, args.remove, args.import_file, args.json_file, args.rebuild_index]):
        parser.print_help()
        return 1

    store = config.open_store(db_path)

    if args.rebuild_index:
        count = store.rebuild_index()
        print(f"Rebuilt index with {count} vectors")
        return 0

    if args.remove is not None:
        removed = store.delete(args.remove)
        print(json.dumps({"removed": removed, "id": args.remove}, indent=2))
        return 0 if removed else 1

    embedder = config.get_embedding_provider(db_path=db_path)

    if args.query:
        started = time.perf_counter()
        hits = search_text(store, embedder, args.query, args.limit)
        print(f"Search time: {time.perf_counter() - started:.3f}s")
        print("Results:")
        print(json.dumps([hit.to_dict() for hit in hits], indent=2, ensure_ascii=False))
        return 0

    pipeline = IngestionPipeline(store, embedder)

    if args.add:
        input_text, result, data = parse_add_argument(args.add)
        if not input_text or not result:
            print("Usage:")
            print(f"{parser.prog} --add 'input|result|{{\"foo\":\"bar\"}}'")
            return 1
        record = pipeline.add(input_text, result, data)
        print(json.dumps({"id": record.id, "input": record.input, "result": record.result,
                          "data": record.data} if record else None, indent=2, ensure_ascii=False))
        return 0

    if args.import_file:
        report = pipeline.import_delimited(args.import_file, args.input_header, args.result_header,
                                           progress=_progress)
    else:
        report = pipeline.import_jsonl(args.json_file, progress=_progress)
    print(f"Imported. {report.added} added, {report.skipped} skipped.")
    return 0


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        return run(args, parser)
    except RecallError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
