"""Report progress to a second terminal, falling back to stdout without one."""

import argparse
import logging
import pathlib
import sys
import time


def _ensure_src_path(src_path: str) -> None:
    """Ensure ``src`` is importable in the current interpreter.

    :param src_path: Absolute path to the repository ``src`` directory.
    """
    exists: bool = src_path in sys.path
    if exists is False:
        sys.path.insert(0, src_path)


def _parse_args() -> argparse.Namespace:
    """Parse CLI arguments.

    :returns: Parsed CLI arguments.
    """
    parser = argparse.ArgumentParser(
        description="Open a progress terminal, stream status lines to it, then shut it down.",
    )
    parser.add_argument("--steps", type=int, default=5, help="Number of progress lines to send.")
    parser.add_argument("--delay", type=float, default=0.2, help="Seconds between progress lines.")
    parser.add_argument("--x", type=int, default=40, help="Terminal left position.")
    parser.add_argument("--y", type=int, default=40, help="Terminal top position.")
    parser.add_argument("--rows", type=int, default=10, help="Terminal height in rows.")
    parser.add_argument("--cols", type=int, default=60, help="Terminal width in columns.")
    parser.add_argument("--device-root", default=None, help="Directory for channel devices.")
    parser.add_argument(
        "--xterm",
        action="store_true",
        help="Open the child in its own xterm window instead of sharing this terminal.",
    )
    parser.add_argument("--log-level", default="INFO", help="Logging level.")
    return parser.parse_args()


def main() -> int:
    """Run the demonstration.

    :returns: Process exit code where ``0`` indicates success.
    """
    repo_root: pathlib.Path = pathlib.Path(__file__).resolve().parent.parent
    _ensure_src_path(str(repo_root / "src"))

    from termchannel import FifoDeviceLayer
    from termchannel import MultiprocessingLauncher
    from termchannel import ParentSession
    from termchannel import TerminalLauncher
    from termchannel.api import default_device_root

    args: argparse.Namespace = _parse_args()
    logging.basicConfig(level=args.log_level.upper(), stream=sys.stderr)

    device_root: pathlib.Path = default_device_root() if args.device_root is None else pathlib.Path(args.device_root)
    launcher = TerminalLauncher() if args.xterm is True else MultiprocessingLauncher()
    with ParentSession(FifoDeviceLayer(device_root), launcher=launcher) as session:
        handle = session.open(args.x, args.y, args.rows, args.cols)
        with session.redirect(handle):
            for step in range(1, args.steps + 1):
                session.write(f"[progress] step {step}/{args.steps}\n")
                time.sleep(args.delay)
        session.write("done\n")
        session.close(handle)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
