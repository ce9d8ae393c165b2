#!/usr/bin/env python3
"""
pgcache - PostgREST query cache tools

Inspect cache keys and try filters locally:

  pgcache key encode tasks "status=eq.open&order=created_at.desc&limit=20"
  pgcache key decode '["postgrest","null","public","tasks",...]'
  pgcache match rows.json "status=eq.open&order=created_at.desc"
  pgcache config show
"""
import sys
import argparse
import json
import logging
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, List, Optional
from rich.console import Console
from rich.table import Table

from pgcache.config import CacheConfig, init_config
from pgcache.errors import PgCacheError
from pgcache.query.filters import FilterEvaluator, sort_rows
from pgcache.query.key import decode_key, encode_key
from pgcache.query.parser import QueryParser, parse_query_string
from pgcache.query.source import RecordedQuery

logger = logging.getLogger(__name__)


console = Console()


def configure_logging(config: CacheConfig, verbose: bool = False):
    """Set up root logging for command-line use."""
    level = logging.DEBUG if verbose else getattr(logging, str(config.log_level).upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def output_rows(rows: List[Dict[str, Any]], format: str = "table", title: str = "Rows"):
    """Output rows in the specified format."""
    if format == "json":
        print(json.dumps(rows, indent=2, default=str))
        return

    columns: List[str] = []
    for row in rows:
        for column in row:
            if column not in columns:
                columns.append(column)

    table = Table(title=title)
    for column in columns:
        table.add_column(column, style="cyan" if column == "id" else None)
    for row in rows:
        table.add_row(*[_cell(row.get(c)) for c in columns])
    console.print(table)


def _cell(value: Any) -> str:
    if value is None:
        return "[dim]null[/dim]"
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


def _build_source(args) -> RecordedQuery:
    headers = {}
    if args.count:
        headers["Prefer"] = f"count={args.count}"
    method = "HEAD" if args.head else args.method.upper()
    body = json.loads(args.body) if getattr(args, "body", None) else None
    return RecordedQuery.from_query_string(
        args.table, args.query or "", schema=args.schema, method=method, headers=headers, body=body,
    )


def cmd_key(args):
    """Encode or decode cache keys."""
    config = args.config_obj

    if args.key_command == "encode":
        parser = QueryParser(config.schema)
        parsed = parser.parse(_build_source(args), is_infinite=args.infinite)
        key = encode_key(parsed)
        if args.output == "json":
            print(json.dumps(list(key)))
        else:
            table = Table(title="Cache Key")
            table.add_column("Segment", style="cyan")
            table.add_column("Value", style="green")
            for name, value in zip(key._fields, key):
                table.add_row(name, value)
            console.print(table)
            print(json.dumps(list(key)))

    elif args.key_command == "decode":
        try:
            raw = json.loads(args.key)
        except ValueError as e:
            console.print(f"[red]Key is not valid JSON: {e}[/red]")
            sys.exit(1)
        decoded = decode_key(raw)
        if decoded is None:
            console.print("[yellow]Not a pgcache key[/yellow]")
            sys.exit(1)

        fields = {
            "schema": decoded.schema,
            "table": decoded.table,
            "query": decoded.query_string,
            "body": decoded.body_key,
            "count": decoded.count.value,
            "head": decoded.is_head,
            "infinite": decoded.is_infinite,
            "order": decoded.order_key,
            "limit": decoded.limit,
            "offset": decoded.offset,
        }
        if args.output == "json":
            print(json.dumps(fields, indent=2))
        else:
            table = Table(title="Decoded Key")
            table.add_column("Field", style="cyan")
            table.add_column("Value", style="green")
            for name, value in fields.items():
                table.add_row(name, _cell(value))
            console.print(table)


def cmd_match(args):
    """Filter and sort a JSON array of rows with a PostgREST query string."""
    if args.rows == "-":
        rows = json.load(sys.stdin)
    else:
        with open(args.rows, "r", encoding="utf-8") as f:
            rows = json.load(f)
    if not isinstance(rows, list):
        console.print("[red]Rows file must contain a JSON array[/red]")
        sys.exit(1)

    params = parse_query_string(args.query.lstrip("?"))
    evaluator = FilterEvaluator()
    matched = [row for row in rows if evaluator.matches(row, params.filters)]
    matched = sort_rows(matched, params.order)

    start = params.offset or 0
    end = start + params.limit if params.limit is not None else None
    window = matched[start:end]

    logger.debug(f"{len(matched)} of {len(rows)} rows match, showing {len(window)}")
    output_rows(window, args.output, title=f"{len(window)} of {len(rows)} rows")


def cmd_config(args):
    """Show configuration."""
    config = args.config_obj

    if args.key:
        if not hasattr(config, args.key):
            console.print(f"[red]Unknown config key: {args.key}[/red]")
            sys.exit(1)
        value = getattr(config, args.key)
        print(json.dumps(value) if isinstance(value, (dict, list)) else value)
    else:
        print(json.dumps(asdict(config), indent=2))


def main(argv: Optional[List[str]] = None):
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="pgcache - PostgREST query cache tools",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  pgcache key encode tasks "status=eq.open&order=created_at.desc&limit=20"
  pgcache key encode tasks "select=id" --count exact --head
  pgcache key decode '["postgrest","null","public","tasks","limit=20","null","count=null","head=false",""]'
  pgcache match rows.json "age=gt.18&order=name.asc&limit=10"
  pgcache config show page_size

Configuration:
  Config file: ~/.config/pgcache/config.toml or ./pgcache.toml
  Environment: PGCACHE_SCHEMA, PGCACHE_PAGE_SIZE, PGCACHE_LOG_LEVEL
        """
    )

    parser.add_argument("--config", help="Config file path")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("-o", "--output", choices=["table", "json"], help="Output format")

    subparsers = parser.add_subparsers(dest="command", required=True, help="Commands")

    # =================
    # KEY GROUP
    # =================
    key_parser = subparsers.add_parser("key", help="Cache key operations")
    key_subparsers = key_parser.add_subparsers(dest="key_command", required=True)

    key_encode = key_subparsers.add_parser("encode", help="Encode a query as a cache key")
    key_encode.add_argument("table", help="Table name")
    key_encode.add_argument("query", nargs="?", default="", help="PostgREST query string")
    key_encode.add_argument("--schema", help="Schema (default from config)")
    key_encode.add_argument("--count", choices=["exact", "planned", "estimated"], help="Count mode")
    key_encode.add_argument("--head", action="store_true", help="Count-only request")
    key_encode.add_argument("--method", default="GET", help="HTTP method (default: GET)")
    key_encode.add_argument("--body", help="JSON request body for writes")
    key_encode.add_argument("--infinite", action="store_true", help="Encode an infinite (paged) key")
    key_encode.set_defaults(func=cmd_key)

    key_decode = key_subparsers.add_parser("decode", help="Decode a cache key (JSON array)")
    key_decode.add_argument("key", help="Cache key as a JSON array")
    key_decode.set_defaults(func=cmd_key)

    # =================
    # MATCH COMMAND
    # =================
    match_parser = subparsers.add_parser("match", help="Filter and sort rows locally")
    match_parser.add_argument("rows", help="JSON file with an array of rows ('-' for stdin)")
    match_parser.add_argument("query", help="PostgREST query string")
    match_parser.set_defaults(func=cmd_match)

    # =================
    # CONFIG GROUP
    # =================
    config_parser = subparsers.add_parser("config", help="Show configuration")
    config_parser.add_argument("action", choices=["show"], help="Config action")
    config_parser.add_argument("key", nargs="?", help="Config key")
    config_parser.set_defaults(func=cmd_config)

    args = parser.parse_args(argv)

    config_args = {}
    if args.output:
        config_args["output_format"] = args.output
    config = init_config(Path(args.config) if args.config else None, **config_args)
    configure_logging(config, args.verbose)

    if not args.output:
        args.output = config.output_format
    args.config_obj = config

    try:
        args.func(args)
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted[/yellow]")
        sys.exit(130)
    except (PgCacheError, OSError, ValueError) as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)


if __name__ == "__main__":
    main()
