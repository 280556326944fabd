import argparse
import asyncio
import logging

from rich.logging import RichHandler

from ui.cli import CallCLI, console
from utils.config import ClientConfig
from utils.error_codes import CallError


def configure_logging(verbose: bool):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(name)s: %(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Two-party peer-to-peer call")
    parser.add_argument("--room", help="room code to join; omit to be prompted")
    parser.add_argument("--backend-url", help="relay URL (default: $BACKEND_URL)")
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose)

    try:
        config = ClientConfig.from_env()
        if args.backend_url:
            config.backend_url = args.backend_url
        cli = CallCLI(config, room_code=args.room.upper() if args.room else None)
        asyncio.run(cli.run())
    except KeyboardInterrupt:
        pass
    except CallError as e:
        console.print(f"[danger]Error: {e.message}[/danger]")
        return 1
    except ValueError as e:
        console.print(f"[danger]Error: {e}[/danger]")
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
