import argparse, json, logging, sys
import uvloop

from . import config
from .db import db, ensure_schema
from .errors import BackfillFailed
from .onboarding import add_contracts


def parse_args(argv=None):
    ap = argparse.ArgumentParser(description="Onboard contracts: resolve storage layout, register events, start backfill.")
    ap.add_argument("addresses", nargs="+", help="contract addresses")
    ap.add_argument("--api-key", default=config.ETHERSCAN_API_KEY, help="explorer API key (default: $ETHERSCAN_API_KEY)")
    ap.add_argument("--db", default=config.DB_PATH, help="sqlite path (default: $DB_PATH)")
    ap.add_argument("--no-backfill", action="store_true", help="skip launching the backfill worker")
    return ap.parse_args(argv)


async def main(argv=None) -> int:
    args = parse_args(argv)
    if not args.api_key:
        raise SystemExit("Missing ETHERSCAN_API_KEY in .env (or pass --api-key)")

    conn = db(args.db)
    ensure_schema(conn)

    result = await add_contracts(args.api_key, args.addresses, conn=conn, backfill=not args.no_backfill)
    print(json.dumps(result.to_dict(), indent=2))

    if result.backfill is None:
        return 0
    try:
        await result.backfill
    except BackfillFailed:
        return 2
    return 0


def run():
    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    sys.exit(uvloop.run(main()))


if __name__ == "__main__":
    run()
