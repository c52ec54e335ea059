import logging
import sys

from . import commands, watcher  # noqa: F401 (registers subcommands)
from .command_registry import build_parser, run_command
from .errors import PageSyncError


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if args.command is None:
        parser.print_help()
        return 1
    try:
        run_command(args.command, args)
    except (PageSyncError, FileNotFoundError, ValueError) as e:
        print(f"pgsync {args.command}: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
