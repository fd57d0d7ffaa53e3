from __future__ import annotations

import asyncio
import os
import sys

from dotenv import load_dotenv

from bot import Settings, build_aggregator, render_fleet_overview, render_instance_report


async def main() -> None:
    load_dotenv('.env')
    settings = Settings()
    if not settings.prometheus_url:
        print('PROMETHEUS_URL is missing in .env')
        return

    # Instance from argv or env; without one print the fleet overview
    name = sys.argv[1] if len(sys.argv) > 1 else os.getenv('DEBUG_INSTANCE', '')

    client, aggregator = build_aggregator(settings)
    try:
        now = settings.now()
        if not name:
            overview, errors = await aggregator.fleet_overview(now)
            print(render_fleet_overview(overview, errors))
            return

        labels = await aggregator.find_instance(name, now)
        if labels is None:
            print(f'Unknown instance {name!r}')
            return
        print('Labels:', labels)
        print('Filter:', aggregator.label_filter(labels))
        report, errors = await aggregator.build_instance_report(labels, now)
        for err in errors:
            print(f'! {err.field}: {err.kind} ({err.message})')
        print('Summary:\n', render_instance_report(report, errors, tz_name=settings.timezone_name))
    finally:
        await client.aclose()


if __name__ == '__main__':
    asyncio.run(main())
