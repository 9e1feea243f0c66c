import argparse
import asyncio
import logging

import perps_core
from api_server import run_server
from utils import format_rate, format_timestamp, format_usd, setup_logging

setup_logging()
logger = logging.getLogger("PerpMonitor")

POLL_SECONDS = 60


async def poll(top: int):
    while True:
        logger.info("Aggregating perps...")
        try:
            records = await perps_core.aggregate()
        except Exception as e:
            logger.error("Aggregation failed: %s", e)
            records = []

        # thinnest insurance coverage first
        covered = sorted(
            (r for r in records if r.open_interest_value > 0),
            key=lambda r: r.fund_oi_ratio,
        )
        for r in covered[:top]:
            logger.info(
                "[%s] %s: OI=%s Fund=%s Fund/OI=%.4f%% Rate=%s (%dh) Next=%s",
                r.exchange.value,
                r.symbol,
                format_usd(r.open_interest_value),
                format_usd(r.insurance_fund),
                r.fund_oi_ratio,
                format_rate(r.funding_rate),
                r.funding_interval_hours,
                format_timestamp(r.next_funding_time),
            )

        await asyncio.sleep(POLL_SECONDS)


def main():
    parser = argparse.ArgumentParser(description="Perpetual insurance-fund monitor")
    sub = parser.add_subparsers(dest="command")

    serve = sub.add_parser("serve", help="run the JSON API")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8080)

    poller = sub.add_parser("poll", help="log the thinnest-covered contracts every minute")
    poller.add_argument("--top", type=int, default=20)

    args = parser.parse_args()
    if args.command == "serve":
        run_server(args.host, args.port)
    else:
        asyncio.run(poll(getattr(args, "top", 20)))


if __name__ == "__main__":
    main()
