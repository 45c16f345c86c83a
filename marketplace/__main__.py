"""Command line entry point: show the loaded configuration and statistics.

Usage:
    python -m marketplace [settings_dir] [--persist]

With ``--persist`` the event journal schema is initialized in the configured
database before the statistics are printed.
"""
import asyncio
import json
import logging
import sys

from config import get_settings, configure_logging, SettingsError
from . import Marketplace

logger = logging.getLogger(__name__)


async def run(settings, persist: bool) -> None:
    market = Marketplace.from_settings(settings)
    if persist:
        import database
        try:
            await database.init_db(settings['db_url'])
            written = await market.persist_events()
            logger.info(f"Persisted {written} events")
        finally:
            await database.close()

    print("\nMarketplace Statistics:")
    print("-" * 50)
    print(json.dumps(market.stats(), indent=2))


def main(argv=None) -> int:
    args = list(sys.argv[1:] if argv is None else argv)
    persist = '--persist' in args
    paths = [a for a in args if not a.startswith('--')]

    try:
        settings = get_settings(paths[0] if paths else None)
    except SettingsError as e:
        print(str(e), file=sys.stderr)
        return 1

    configure_logging(settings['log_level'])

    print("\nSettings Configuration:")
    print("-" * 50)
    for key, value in settings.items():
        print(f"{key}: {value}")

    asyncio.run(run(settings, persist))
    return 0


if __name__ == "__main__":
    sys.exit(main())
