"""CLI entry point."""

import os
import sys

from common.logging_config import configure_logging
from cli.constants import ERROR_PREFIX
from cli.parser import ParseError, parse_tokens
from cli.repl import dispatch_command, repl_loop


LOGGER_TREES = ('cli', 'transfer', 'common')


def run_once(args) -> int:
    """Run a single command from argv and return the process exit code."""
    try:
        cmd_obj = parse_tokens(args)
    except ParseError as e:
        print(f"Error: {e}")
        return 2

    result = dispatch_command(cmd_obj)
    print(result)
    return 1 if result.startswith(ERROR_PREFIX) else 0


def main() -> None:
    """
    Entry point for CLI.

    ``fileflow`` starts the REPL; ``fileflow send|receive|status|config ...``
    runs a single command and exits with status 1 on failure.
    """
    debug = '--debug' in sys.argv
    if debug:
        sys.argv.remove('--debug')

    # progress output owns the terminal unless debugging
    log_level = 'DEBUG' if debug else os.getenv('LOG_LEVEL', 'WARNING')
    logger = configure_logging(LOGGER_TREES, log_level=log_level)
    logger.debug("CLI starting with args %s", sys.argv[1:])

    try:
        if sys.argv[1:]:
            sys.exit(run_once(sys.argv[1:]))
        repl_loop()
    except Exception as e:
        logger.error(f"CLI error: {e}", exc_info=True)
        raise
    finally:
        logger.debug("CLI exiting")


if __name__ == "__main__":
    main()
