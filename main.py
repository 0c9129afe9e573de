#!/usr/bin/env python3
"""
Site Cloner

Render a web page (and optional sub-routes) in a headless browser, capture
every resource it loads, rewrite references to the local copies and package
the result as a zip archive for offline browsing.

Usage examples:
  python3 main.py serve --port 3000
  python3 main.py clone https://example.com output_folder
  python3 main.py clone https://example.com output_folder --route / --route /about --max-wait 1m
"""

import asyncio
import argparse
import logging
import os
import sys

from sitecloner import build_options, clone_page, evaluate, parse_timeout
from sitecloner.browser import WAIT_UNTIL_CHOICES
from sitecloner.config import settings
from sitecloner.errors import ClonerError


def serve(args):
    import uvicorn

    from sitecloner.api import create_app

    uvicorn.run(create_app(settings), host=args.host, port=args.port, log_level=settings.log_level.lower())


async def clone(args):
    decision = await evaluate(args.url, settings.allowed_hosts)
    if not decision.allowed:
        raise ClonerError(decision.reason)

    options = build_options(
        args.url,
        settings,
        routes=args.route,
        wait_until=args.wait_until,
        extra_wait_ms=args.extra_wait,
        max_wait_ms=args.max_wait,
        download_external=args.external,
        auto_scroll=args.auto_scroll,
        block_trackers=args.block_trackers,
    )
    os.makedirs(args.output, exist_ok=True)
    archive_path = os.path.join(args.output, "site-clone.zip")

    def show(progress):
        print(f"[{progress.stage}] {progress.message} ({progress.assets} assets)")

    result = await clone_page(
        args.url,
        args.output,
        archive_path,
        options,
        on_progress=show,
        single_process=settings.browser_single_process,
    )
    print(f"\n✅ {len(result.routes)} pages and {result.assets} assets saved to {result.archive_path}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(
        description="Clone web pages and all their assets into an offline zip archive. Uses Playwright to render each page and capture every resource it loads."
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP job API")
    serve_parser.add_argument("--host", default=settings.host, help="Interface to bind. Default: %(default)s")
    serve_parser.add_argument("--port", type=int, default=settings.port, help="Port to listen on. Default: %(default)s")

    clone_parser = subparsers.add_parser("clone", help="Clone one site locally without the API")
    clone_parser.add_argument("url",
        help="Target URL to clone. Example: https://example.com"
    )
    clone_parser.add_argument("output",
        help="Output folder. The captured tree goes to output/site and the archive to output/site-clone.zip"
    )
    clone_parser.add_argument("--route",
        action="append",
        help="Route to capture, relative to the target origin. Repeat for several routes. Default: /"
    )
    clone_parser.add_argument("--wait-until",
        choices=WAIT_UNTIL_CHOICES,
        default="load",
        help="Load condition to wait for on each route. Default: load"
    )
    clone_parser.add_argument("--extra-wait",
        type=parse_timeout,
        default=None,
        help="Settle delay after the load condition, e.g. 1.5s or 500ms. Default: 1.5s"
    )
    clone_parser.add_argument("--max-wait",
        type=parse_timeout,
        default=None,
        help="Navigation timeout per route in seconds (s) or minutes (m). Default: 45s. Examples: 30s, 2m"
    )
    clone_parser.add_argument("--external",
        action="store_true",
        help="Also save resources served from other hosts (CDNs, font services)."
    )
    clone_parser.add_argument("--auto-scroll",
        action="store_true",
        help="Scroll each page to the bottom to trigger lazy-loaded content."
    )
    clone_parser.add_argument("--block-trackers",
        action="store_true",
        help="Abort analytics and ad requests while capturing."
    )
    args = parser.parse_args()

    logging.basicConfig(level=settings.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    if args.command == "serve":
        serve(args)
    else:
        try:
            asyncio.run(clone(args))
        except ClonerError as e:
            print(f"❌ {e}", file=sys.stderr)
            sys.exit(1)
