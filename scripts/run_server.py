#!/usr/bin/env python3
"""Run the lab control plane with explicit args (avoids shell interpolation)."""
from __future__ import annotations

import argparse
from dataclasses import replace

import uvicorn

from lab_control.app import LabControlSettings, create_app


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser()
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument(
        "--async-provisioning",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Override ASYNC_PROVISIONING from the environment.",
    )
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    settings = LabControlSettings.from_env()
    if args.async_provisioning is not None:
        settings = replace(settings, async_provisioning=args.async_provisioning)
    app = create_app(settings)
    uvicorn.run(app, host=args.host, port=args.port)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
