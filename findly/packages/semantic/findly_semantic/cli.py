import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence

from findly.packages.common.findly_common.logging import setup_logging
from findly.packages.semantic.findly_semantic.errors import SemanticLayerError
from findly.packages.semantic.findly_semantic.loader import load_definitions
from findly.packages.semantic.findly_semantic.query.engine import SemanticQueryEngine
from findly.packages.semantic.findly_semantic.registry import RegistryHolder


def _parse_args(argv: Optional[Sequence[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Compile a semantic query request into SQL.")
    parser.add_argument("--definitions", required=True, help="YAML file with data sources, dimensions and metrics.")
    parser.add_argument("--request", required=True, help="JSON file with the query request, or '-' for stdin.")
    parser.add_argument("--dialect", default=None, help="SQL dialect to render (bigquery, postgres, sqlite).")
    parser.add_argument("--log-level", default=None, help="Root log level, e.g. DEBUG or INFO.")
    return parser.parse_args(argv)


def _read_request(location: str) -> dict:
    raw = sys.stdin.read() if location == "-" else Path(location).read_text(encoding="utf-8")
    return json.loads(raw)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parse_args(argv)
    setup_logging(level=args.log_level, with_console=True)
    logger = logging.getLogger(__name__)

    try:
        holder = RegistryHolder()
        holder.reload(load_definitions(Path(args.definitions)))
        engine = SemanticQueryEngine(holder, dialect=args.dialect)
        artifact = engine.compile(_read_request(args.request))
    except SemanticLayerError as exc:
        logger.error(f"Compilation failed: {exc.message}")
        print(f"error: {exc.message}", file=sys.stderr)
        return 2

    print(json.dumps(artifact.model_dump(mode="json"), indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
