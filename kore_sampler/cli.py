#!/usr/bin/env python
"""
Kore Sampler CLI - sample sessions and export transcripts.

Usage:
    kore-sampler sample --date 2026-03-14 --time 09:00 --count 25
    kore-sampler transcripts SESSION_ID [SESSION_ID ...] --from ISO --to ISO
"""

import argparse
import asyncio
import json
import logging
import random
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import load_config
from .errors import AuthenticationError, ConfigurationError, InsufficientSessionsError
from .logging_utils import configure_safe_logging
from .pipeline import fetch_transcripts_for, sample_sessions
from .sampler import parse_et_datetime
from .swt_builder import summarize

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1


def _load(args):
    return load_config(path=args.config, source=args.source)


def _write_output(payload: Dict[str, Any], output: Optional[Path]) -> None:
    text = json.dumps(payload, indent=2)
    if output:
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(text + "\n")
        logger.info(f"Wrote {output}")
    else:
        print(text)


def _progress(step: str, sessions_found: int, window_index: int, window_label: str) -> None:
    logger.info(f"[window {window_index + 1}] {step} ({sessions_found} found)")


def cmd_sample(args) -> int:
    """Sample sessions near an Eastern-time anchor and export their transcripts."""
    config = _load(args)
    anchor = parse_et_datetime(args.date, args.time)
    rng = random.Random(args.seed) if args.seed is not None else None
    logger.info(f"Sampling {args.count} sessions from {args.date} {args.time} ET ({anchor.isoformat()})")

    outcome = asyncio.run(
        sample_sessions(config, anchor, args.count, progress_callback=_progress, rng=rng)
    )

    payload = outcome.to_dict()
    payload["summary"] = summarize(outcome.swts)
    _write_output(payload, args.output)
    return EXIT_OK


def cmd_transcripts(args) -> int:
    """Export transcripts for explicit session IDs."""
    config = _load(args)
    date_range = None
    if args.from_date or args.to_date:
        if not (args.from_date and args.to_date):
            logger.error("--from and --to must be given together")
            return EXIT_FAILURE
        date_range = (args.from_date, args.to_date)

    swts = asyncio.run(fetch_transcripts_for(config, args.session_ids, date_range))

    _write_output(
        {"sessions": [swt.to_dict() for swt in swts], "summary": summarize(swts)},
        args.output,
    )
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kore-sampler",
        description="Kore Sampler - sample bot sessions and export clean transcripts",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  kore-sampler sample --date 2026-03-14 --time 09:00 --count 25
  kore-sampler sample --date 2026-03-14 --time 09:00 --count 10 --source synthetic
  kore-sampler transcripts ID1 ID2 --from 2026-03-14T00:00:00Z --to 2026-03-15T00:00:00Z
  kore-sampler transcripts ID1 -o out/transcripts.json
        """
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("-c", "--config", type=Path, help="Bot config YAML (default: config/bot.yaml)")
    common.add_argument("--source", choices=["remote", "synthetic"], help="Session source (default: from config)")
    common.add_argument("-o", "--output", type=Path, help="Write JSON here instead of stdout")
    common.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Command")

    # sample
    p_sample = subparsers.add_parser("sample", parents=[common], help="Sample sessions near a date/time")
    p_sample.add_argument("--date", required=True, help="Anchor date, YYYY-MM-DD (US Eastern)")
    p_sample.add_argument("--time", required=True, help="Anchor time, HH:MM (US Eastern)")
    p_sample.add_argument("-n", "--count", type=int, required=True, help="Number of sessions to sample")
    p_sample.add_argument("--seed", type=int, help="Random seed for a reproducible sample")
    p_sample.set_defaults(func=cmd_sample)

    # transcripts
    p_transcripts = subparsers.add_parser("transcripts", parents=[common], help="Transcripts for session IDs")
    p_transcripts.add_argument("session_ids", nargs="+", help="Session IDs")
    p_transcripts.add_argument("--from", dest="from_date", help="Range start, ISO-8601 (default: 7 days ago)")
    p_transcripts.add_argument("--to", dest="to_date", help="Range end, ISO-8601 (default: now)")
    p_transcripts.set_defaults(func=cmd_transcripts)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return EXIT_OK

    configure_safe_logging(logging.DEBUG if args.verbose else logging.INFO)

    try:
        return args.func(args)
    except InsufficientSessionsError as e:
        logger.error(str(e))
    except AuthenticationError as e:
        logger.error(f"Authentication failed - check client_id/client_secret: {e}")
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
    except ValueError as e:
        logger.error(str(e))
    return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
