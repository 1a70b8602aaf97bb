"""
mezger — Listing harvester.

Scrapes the configured car, part and auction sources, reconciles what it
saw with the stored JSON document (new / updated / sold / expired) and
writes the document back.

Usage
-----
    # Run continuously (interval from config/settings.json)
    python main.py

    # Run once then exit
    python main.py --run-once

    # Override config directory and data file
    python main.py --config-dir /etc/mezger --data-file /var/mezger/data.json

    # Verbose (DEBUG) logging
    python main.py --verbose

Exit status is 0 when the document was written, 1 otherwise. Individual
site failures do not change it.
"""

import argparse
import logging
import sys

from dotenv import load_dotenv

from mezger.scheduler import Scheduler


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="mezger",
        description="Mezger listing harvester",
    )
    parser.add_argument(
        "--run-once",
        action="store_true",
        default=False,
        help="Execute a single run then exit (default: run continuously)",
    )
    parser.add_argument(
        "--config-dir",
        default="config",
        metavar="DIR",
        help="Directory containing sites.json and settings.json (default: config/)",
    )
    parser.add_argument(
        "--data-file",
        default=None,
        metavar="PATH",
        help="Override the data document path (default: value from settings.json)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        default=False,
        help="Enable DEBUG logging",
    )
    return parser.parse_args()


def _configure_logging(verbose: bool, log_level: str = "INFO") -> None:
    level = logging.DEBUG if verbose else getattr(logging, log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)-7s %(name)s — %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def main() -> int:
    args = _parse_args()
    load_dotenv()
    _configure_logging(args.verbose)

    try:
        scheduler = Scheduler(config_dir=args.config_dir, data_file=args.data_file)
    except FileNotFoundError as exc:
        logging.error("Config file not found: %s", exc)
        return 1
    except KeyError as exc:
        logging.error("Missing required setting or environment variable: %s", exc)
        return 1
    except Exception as exc:
        logging.error("Startup error: %s", exc)
        return 1

    if args.run_once:
        stats = scheduler.run_once()
        return 0 if stats["persisted"] else 1

    scheduler.run_forever()
    return 0


if __name__ == "__main__":
    sys.exit(main())
