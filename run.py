from __future__ import annotations

import argparse
import asyncio
import subprocess
import sys


def _run_bootstrap() -> None:
    subprocess.run(
        [sys.executable, "-m", "pip", "install", "-e", "."],
        check=True,
    )
    subprocess.run(
        [sys.executable, "-m", "playwright", "install", "chromium"],
        check=True,
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the browser bridge.")
    parser.add_argument(
        "--bootstrap",
        action="store_true",
        help="Install the project and Playwright Chromium before starting.",
    )
    sub = parser.add_subparsers(dest="mode")

    sub.add_parser("relay", help="Serve the observer/control relay.")

    agent = sub.add_parser("agent", help="Run observer agents for browser profiles.")
    agent.add_argument(
        "--profile",
        action="append",
        default=[],
        help="Profile key to observe; repeat for several profiles.",
    )
    agent.add_argument("--static", action="store_true", help="Use in-memory pages instead of Chromium.")
    agent.add_argument("--headless", action=argparse.BooleanOptionalAction, default=None)
    agent.add_argument("--start-url", default=None, help="Open this URL in a new tab on start.")

    e2e = sub.add_parser("e2e", help="Run the end-to-end relay check.")
    e2e.add_argument("--server", default="ws://127.0.0.1:8999")
    e2e.add_argument("--key", required=True, help="Bridge key accepted by the relay.")
    e2e.add_argument("--profile", default="e2e_profile")
    e2e.add_argument("--timeout-ms", type=int, default=8000)
    return parser


def main() -> None:
    parser = _build_parser()
    args = parser.parse_args()

    if args.bootstrap:
        _run_bootstrap()
    if args.mode is None:
        parser.print_help()
        return

    import app
    from relay.config import RelayConfig
    from relay.e2e import E2EFailure, E2EOptions

    app.setup()
    try:
        if args.mode == "relay":
            asyncio.run(app.serve_relay(RelayConfig.from_env()))
        elif args.mode == "agent":
            asyncio.run(
                app.run_agents(
                    args.profile,
                    static=args.static,
                    headless=args.headless,
                    start_url=args.start_url,
                )
            )
        else:
            options = E2EOptions(
                bridge_key=args.key,
                server_url=args.server,
                profile_key=args.profile,
                timeout_s=args.timeout_ms / 1000,
            )
            try:
                steps = asyncio.run(app.run_e2e_check(options))
            except E2EFailure as exc:
                print(f"E2E failed: {exc}", file=sys.stderr)
                raise SystemExit(1) from exc
            for step in steps:
                print(f"ok  {step}")
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
