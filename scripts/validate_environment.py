#!/usr/bin/env python3
"""Check that a desk or server host can run KeyDesk.

Each check prints PASS/FAIL; local hardware agent reachability is reported
as INFO only because the reader is often unplugged on a dev machine.
"""

from __future__ import annotations

import importlib
import shutil
import sys
import tempfile
from dataclasses import replace
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from typing import Callable

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from keydesk.domain.models import CARD_SEQUENCE, BookingData
from keydesk.repository.data_repository import DataRepository
from keydesk.repository.outbox_repository import OutboxRepository
from keydesk.services.agent_service import AgentRegistry
from keydesk.services.bridge_client import LocalAgentClient
from keydesk.services.issue_service import CardIssueService
from keydesk.utils.config import Settings, get_settings

RULE = "-" * 52
REQUIRED_DISTRIBUTIONS = {
    "fastapi": "fastapi",
    "uvicorn": "uvicorn",
    "pydantic": "pydantic",
    "requests": "requests",
    "pandas": "pandas",
    "streamlit": "streamlit",
}
CheckResult = tuple[bool, str]


def check_python() -> CheckResult:
    found = sys.version.split()[0]
    if sys.version_info >= (3, 10):
        return True, f"[PASS] Python {found}"
    return False, f"[FAIL] Python >= 3.10 required, found {found}"


def check_packages() -> CheckResult:
    missing = []
    for module_name, dist_name in REQUIRED_DISTRIBUTIONS.items():
        try:
            importlib.import_module(module_name)
            version(dist_name)
        except (ImportError, PackageNotFoundError) as exc:
            missing.append(f"{module_name} ({exc})")
    if missing:
        return False, "[FAIL] Packages missing: " + "; ".join(missing)
    return True, f"[PASS] Packages: {', '.join(REQUIRED_DISTRIBUTIONS)}"


def check_storage(settings: Settings) -> CheckResult:
    try:
        DataRepository(settings).initialize_database()
        OutboxRepository(settings).initialize()
    except RuntimeError as exc:
        return False, f"[FAIL] Storage: {exc}"
    return True, "[PASS] Storage: cloud database and desk outbox"


def check_booking_queue(settings: Settings) -> CheckResult:
    repository = DataRepository(settings)
    service = CardIssueService(
        repository=repository,
        agent_registry=AgentRegistry(repository, settings),
        settings=settings,
    )
    booking = BookingData(
        booking_id="VALIDATE-1",
        room_number="101",
        guest_id="G-1",
        check_in="2026-01-01T15:00:00Z",
        check_out="2026-01-02T11:00:00Z",
        facility_id="HOTEL-VALIDATE",
    )
    issues = service.create_issues_for_booking("HOTEL-VALIDATE", booking)
    queued = [issue.card_type for issue in issues]
    if queued != list(CARD_SEQUENCE):
        return False, f"[FAIL] Booking queue produced {[c.value for c in queued]}"
    return True, f"[PASS] Booking queue: {len(issues)} card issues in sequence order"


def describe_local_agent(settings: Settings) -> str:
    client = LocalAgentClient(settings=settings)
    service_up = client.check_service_status()
    connected = client.get_reader_status()["connected"] if service_up else False
    return f"[INFO] Local agent {client.base_url}: service_up={service_up} reader={connected}"


def main() -> int:
    workdir = Path(tempfile.mkdtemp(prefix="keydesk-env-"))
    settings = replace(
        get_settings(),
        database_path=workdir / "validation.db",
        outbox_path=workdir / "validation_outbox.db",
    )
    checks: list[Callable[[], CheckResult]] = [
        check_python,
        check_packages,
        lambda: check_storage(settings),
        lambda: check_booking_queue(settings),
    ]
    outcomes: list[CheckResult] = []
    try:
        for check in checks:
            outcomes.append(check())
            if not outcomes[-1][0]:
                break
        info = describe_local_agent(settings)
    finally:
        shutil.rmtree(workdir, ignore_errors=True)

    print(RULE)
    print(" KeyDesk environment check")
    print(RULE)
    for _, line in outcomes:
        print(f" {line}")
    print(f" {info}")
    print(RULE)
    passed = len(outcomes) == len(checks) and all(ok for ok, _ in outcomes)
    print(" Ready." if passed else " Not ready; fix the failures above.")
    return 0 if passed else 1


if __name__ == "__main__":
    raise SystemExit(main())
