#!/usr/bin/env python3
"""
MongoDB Copy
Copies databases and collections (data, indexes and storage options) between servers
"""
import argparse
import logging
import sys
from typing import Any, Dict, List, Optional

from mongocopy import (
    ConfigManager,
    ConfigurationError,
    create_client,
    create_migration_engine,
    ping,
)

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_COLLECTION_FAILURES = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Copy MongoDB databases and collections')
    parser.add_argument('--config', '-c', help='Configuration file (JSON, YAML or .env)')

    endpoints = parser.add_argument_group('endpoints')
    endpoints.add_argument('--source', help='Source server uri or host:port')
    endpoints.add_argument('--source-username')
    endpoints.add_argument('--source-password')
    endpoints.add_argument('--source-auth-database')
    endpoints.add_argument('--target', help='Target server uri or host:port (defaults to the source)')
    endpoints.add_argument('--target-username')
    endpoints.add_argument('--target-password')
    endpoints.add_argument('--target-auth-database')

    selection = parser.add_argument_group('selection')
    selection.add_argument('--source-databases', '--sourceDatabase',
                           help='Databases to copy: names, wildcards or src=dst pairs (comma separated)')
    selection.add_argument('--target-databases', '--targetDatabase',
                           help='Target database names, one per source database')
    selection.add_argument('--collections',
                           help='Collections to copy: names, wildcards or src=dst pairs (comma separated)')
    selection.add_argument('--default-database', help='Database used when no source database is listed')
    selection.add_argument('--merge-into', dest='target_collection',
                           help='Merge every selected collection into this target collection')
    selection.add_argument('--duplicate', dest='collection_suffix', nargs='?', const='_COPY',
                           help='Copy each collection to <name><suffix> (default suffix: _COPY)')

    copy = parser.add_argument_group('copy options')
    copy.add_argument('--threads', '-t', type=int, help='Collections copied in parallel')
    copy.add_argument('--batch-size', type=int, help='Documents per insert batch (<= 0: auto)')
    copy.add_argument('--no-indexes', dest='copy_indexes', action='store_false', default=None,
                      help='Do not recreate indexes')
    copy.add_argument('--indexes-before', action='store_true', default=None,
                      help='Create indexes before copying the data')
    copy.add_argument('--indexes-background', action='store_true', default=None)
    copy.add_argument('--indexes-sparse', action='store_true', default=None)
    copy.add_argument('--drop', dest='drop_target_first', action='store_true', default=None,
                      help='Drop target collections before copying')
    copy.add_argument('--resume', action='store_true', default=None,
                      help='Continue after the largest _id already in the target')
    copy.add_argument('--skip-existing', action='store_true', default=None,
                      help='Skip collections that already have documents in the target')
    copy.add_argument('--if-smaller', action='store_true', default=None,
                      help='Only copy when the target has fewer documents than the source')
    copy.add_argument('--lazy-wait', dest='lazy_wait_ms', type=int,
                      help='Milliseconds to wait between batches')
    copy.add_argument('--block-compressor', choices=['none', 'zlib', 'snappy'],
                      help='WiredTiger block compressor for created collections')
    copy.add_argument('--allocation', choices=['2x', '4x', '8x'],
                      help='WiredTiger page size preset for created collections')
    copy.add_argument('--config-string', help='Raw WiredTiger config string for created collections')

    parser.add_argument('--progress', dest='show_progress', action='store_true', default=None,
                        help='Show a progress bar over collections')
    parser.add_argument('--strict', action='store_true', default=None,
                        help='Exit with code 2 when any collection fails')
    parser.add_argument('--log-level', help='Logging level (default: INFO)')
    parser.add_argument('--log-file', default='mongo_copy.log', help='Log file path')
    return parser


def args_to_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    """Command line values that were actually given"""
    skip = ('config', 'log_file')
    return {key: value for key, value in vars(args).items()
            if key not in skip and value is not None}


def configure_logging(level: str, log_file: Optional[str]):
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(threadName)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers
    )


def main(argv: Optional[List[str]] = None) -> int:
    """Main function for the copy job"""
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level or 'INFO', args.log_file)

    source_client = target_client = None
    try:
        config = ConfigManager("MONGOCOPY").load_config(args.config, args_to_overrides(args))
        logging.getLogger().setLevel(getattr(logging, config.log_level, logging.INFO))

        logger.info("🚀 Opening connections...")
        source_client = create_client(config.source)
        if not ping(source_client):
            logger.error("Failed to connect to source server")
            return EXIT_ERROR

        target_client = create_client(config.target)
        if not ping(target_client):
            logger.error("Failed to connect to target server")
            return EXIT_ERROR

        engine = create_migration_engine(config, source_client, target_client)
        summary = engine.run()

        logger.info(f"📊 Final Results: {summary.to_dict()}")
        if config.strict and not summary.success:
            return EXIT_COLLECTION_FAILURES
        return EXIT_OK

    except ConfigurationError as e:
        logger.error(f"❌ {e}")
        return EXIT_ERROR
    except Exception as e:
        logger.exception(f"❌ Copy failed: {e}")
        return EXIT_ERROR
    finally:
        if source_client is not None:
            source_client.close()
        if target_client is not None:
            target_client.close()


def run():
    sys.exit(main())


if __name__ == "__main__":
    run()
