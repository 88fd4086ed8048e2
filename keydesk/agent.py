"""Desk-side worker launcher.

Pair the workstation once, then run the worker against the cloud API:

    python -m keydesk.agent pair --token <pairing-token> --fingerprint <id>
    python -m keydesk.agent run --agent-id <id> --agent-token <token>

AGENT_ID and AGENT_TOKEN may be used instead of the flags. A standalone
worker does not share the reader with a console API on the same desk; set
DESK_AGENT_ID on the API instead when both run on one workstation.
"""

from __future__ import annotations

import argparse
import os
import signal
import threading
from typing import Any

import requests

from keydesk.repository.outbox_repository import OutboxRepository
from keydesk.services.agent_worker import AgentWorker
from keydesk.services.bridge_client import LocalAgentClient
from keydesk.services.cloud_client import CloudApiClient
from keydesk.services.health_service import BridgeHealthMonitor
from keydesk.utils.config import get_settings
from keydesk.utils.logger import get_logger


logger = get_logger(__name__)


def _pair(args: argparse.Namespace) -> int:
    settings = get_settings()
    body: dict[str, Any] = {"token": args.token, "fingerprint": args.fingerprint, "agent_name": args.name}
    if args.model or args.serial or args.vendor:
        body["device_info"] = {"model": args.model, "serial": args.serial, "vendor": args.vendor}
    response = requests.post(
        f"{settings.cloud_api_url.rstrip('/')}/pairing/confirm",
        json=body,
        timeout=10,
    )
    if not response.ok:
        logger.error("Pairing failed (%s): %s", response.status_code, response.text)
        return 1
    paired = response.json()
    print(f"AGENT_ID={paired['agent']['id']}")
    print(f"AGENT_TOKEN={paired['agent_token']}")
    return 0


def _run(args: argparse.Namespace) -> int:
    if not args.agent_id or not args.agent_token:
        logger.error("Agent id and token are required; pair this workstation first")
        return 2
    settings = get_settings()
    outbox = OutboxRepository(settings)
    outbox.initialize()
    worker = AgentWorker(
        cloud=CloudApiClient(args.agent_id, args.agent_token, settings=settings),
        health_monitor=BridgeHealthMonitor(LocalAgentClient(settings=settings), settings),
        outbox=outbox,
        settings=settings,
    )

    stop_event = threading.Event()
    signal.signal(signal.SIGINT, lambda *_: stop_event.set())
    signal.signal(signal.SIGTERM, lambda *_: stop_event.set())
    worker.run_forever(stop_event)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="keydesk-agent", description="Key card desk agent")
    commands = parser.add_subparsers(dest="command", required=True)

    pair = commands.add_parser("pair", help="exchange a pairing token for agent credentials")
    pair.add_argument("--token", required=True)
    pair.add_argument("--fingerprint", required=True)
    pair.add_argument("--name", default="")
    pair.add_argument("--model", help="encoder model reported to the device registry")
    pair.add_argument("--serial")
    pair.add_argument("--vendor")
    pair.set_defaults(handler=_pair)

    run = commands.add_parser("run", help="poll the cloud queue and program cards")
    run.add_argument("--agent-id", default=os.getenv("AGENT_ID"))
    run.add_argument("--agent-token", default=os.getenv("AGENT_TOKEN"))
    run.set_defaults(handler=_run)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    return args.handler(args)


if __name__ == "__main__":
    raise SystemExit(main())
