from __future__ import annotations

import asyncio
import time
from dataclasses import replace

import pytest
from fastapi.testclient import TestClient

from keydesk.controllers.provisioning_controller import BookingRequest, program_sequence
from keydesk.domain.models import CardType, SequenceOutcome
from keydesk.main import create_app
from keydesk.services.bridge_client import TIMEOUT_MESSAGE, CardPresence
from keydesk.simulator import SimulatedReader, create_simulator


HOTEL = "HOTEL-1"
BOOKING = {
    "booking_id": "4821",
    "room_number": "305",
    "guest_id": "G-1001",
    "check_in": "2026-10-18T15:00:00Z",
    "check_out": "2026-10-21T11:00:00Z",
    "facility_id": HOTEL,
}


def _pair(client: TestClient, fingerprint: str = "fp-desk-1") -> tuple[str, dict[str, str]]:
    generated = client.post("/pairing/generate", json={"hotel_id": HOTEL, "agent_name": "Front Desk"})
    assert generated.status_code == 201
    confirmed = client.post(
        "/pairing/confirm",
        json={"token": generated.json()["token"], "fingerprint": fingerprint, "agent_name": "Front Desk"},
    )
    assert confirmed.status_code == 201
    body = confirmed.json()
    return body["agent"]["id"], {"X-Agent-Token": body["agent_token"]}


def test_attended_sequence_reports_partial_success(settings, make_fake_agent):
    agent = make_fake_agent(failures={CardType.ELEVATOR: TIMEOUT_MESSAGE})
    app = create_app(settings=settings, client=agent, poll_health=False)

    with TestClient(app) as client:
        bridge = client.get("/bridge/status")
        assert bridge.status_code == 200
        assert bridge.json()["ready"] is True

        response = client.post("/sequences", json=BOOKING)
        assert response.status_code == 200
        body = response.json()
        assert body["outcome"] == "partial_success"
        assert body["success"] is False
        assert body["completed_cards"] == 5
        assert [item["status"] for item in body["results"]] == [
            "success",
            "success",
            "error",
            "success",
            "success",
        ]
        assert body["results"][2]["error"] == TIMEOUT_MESSAGE
        assert body["events"][-1]["overall_progress"] == pytest.approx(100.0)


def _poll_run(client: TestClient, run_id: str, until, timeout: float = 5.0) -> dict:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        body = client.get(f"/sequences/runs/{run_id}").json()
        if until(body):
            return body
        time.sleep(0.02)
    raise AssertionError(f"run {run_id} never reached the expected state")


def test_attended_run_reports_progress_and_can_be_abandoned(settings, make_fake_agent):
    agent = make_fake_agent(detections=[CardPresence.ABSENT] * 10_000)
    app = create_app(settings=settings, client=agent, poll_health=False)

    with TestClient(app) as client:
        started = client.post("/sequences/runs", json=BOOKING)
        assert started.status_code == 202
        run_id = started.json()["run_id"]

        waiting = _poll_run(client, run_id, lambda body: body["stall_notice"] is not None)
        assert waiting["state"] == "running"
        assert waiting["instruction"].startswith("Insert card 1 of 5")
        assert waiting["overall_progress"] == pytest.approx(10.0)
        cursor = waiting["last_sequence"]
        assert client.get(f"/sequences/runs/{run_id}", params={"after": cursor}).json()["events"] == []

        assert client.post("/sequences", json=BOOKING).status_code == 409

        abandoned = client.post(f"/sequences/runs/{run_id}/abandon")
        assert abandoned.status_code == 202
        assert abandoned.json()["abandon_requested"] is True

        finished = _poll_run(client, run_id, lambda body: body["state"] != "running")
        assert finished["state"] == "finished"
        assert finished["result"]["outcome"] == "abandoned"
        assert finished["result"]["completed_cards"] == 0
        assert app.state.orchestrator.is_running is False

        assert client.get("/sequences/runs/no-such-run").status_code == 404
        assert client.post("/sequences/runs/no-such-run/abandon").status_code == 404
    assert agent.writes == []


def test_caller_hanging_up_abandons_the_blocking_run(settings, make_fake_agent):
    class HungUpRequest:
        async def is_disconnected(self) -> bool:
            return True

    agent = make_fake_agent(detections=[CardPresence.ABSENT] * 10_000)
    app = create_app(settings=settings, client=agent, poll_health=False)
    app.state.repository.initialize_database()
    orchestrator = app.state.orchestrator

    response = asyncio.run(
        program_sequence(BookingRequest(**BOOKING), request=HungUpRequest(), orchestrator=orchestrator)
    )

    assert response.outcome == SequenceOutcome.ABANDONED
    assert response.completed_cards == 0
    assert orchestrator.is_running is False
    assert agent.writes == []


def test_attended_sequence_refused_when_bridge_down(settings, make_fake_agent):
    agent = make_fake_agent(service_up=False)
    app = create_app(settings=settings, client=agent, poll_health=False)

    with TestClient(app) as client:
        response = client.post("/sequences", json=BOOKING)
        assert response.status_code == 503
        assert agent.writes == []

        details = client.get("/local-agent/status")
        assert details.json() == {"connected": False, "error": "Agent not available"}


def test_sequence_rejects_blank_booking_fields(settings, fake_agent):
    app = create_app(settings=settings, client=fake_agent, poll_health=False)

    with TestClient(app) as client:
        response = client.post("/sequences", json={**BOOKING, "room_number": "  "})
        assert response.status_code == 422
        assert fake_agent.writes == []


def test_queue_flow_through_agent_endpoints(settings, fake_agent):
    app = create_app(settings=settings, client=fake_agent, poll_health=False)

    with TestClient(app) as client:
        created = client.post(
            "/card-issues",
            json={
                "hotel_id": HOTEL,
                "booking_id": "4821",
                "room_number": "305",
                "card_type": "room",
                "payload": {"cardType": "room", "bookingId": "4821", "roomNumber": "305"},
            },
        )
        assert created.status_code == 201
        assert created.json()["agent_online"] is False
        issue_id = created.json()["issue"]["id"]

        agent_id, headers = _pair(client)
        assert client.post(f"/agents/{agent_id}/heartbeat").status_code == 401
        assert client.post(f"/agents/{agent_id}/heartbeat", headers={"X-Agent-Token": "nope"}).status_code == 401
        assert client.post(f"/agents/{agent_id}/heartbeat", headers=headers).json()["status"] == "online"

        claim = client.post(f"/agents/{agent_id}/claim", headers=headers)
        assert claim.status_code == 200
        assert claim.json()["claimed"] is True
        assert claim.json()["issue"]["id"] == issue_id
        assert claim.json()["issue"]["status"] == "in_progress"

        empty = client.post(f"/agents/{agent_id}/claim", headers=headers)
        assert empty.json() == {"claimed": False, "issue": None}

        retry_early = client.post(f"/card-issues/{issue_id}/retry")
        assert retry_early.status_code == 409

        done = client.patch(
            f"/agents/{agent_id}/card-issues/{issue_id}/status",
            headers=headers,
            json={"status": "done", "result": {"cardUID": "04A1B2"}},
        )
        assert done.status_code == 200
        assert done.json()["status"] == "done"
        assert done.json()["completed_at"] is not None

        listed = client.get("/card-issues", params={"hotel": HOTEL, "status": "done"})
        assert [item["id"] for item in listed.json()] == [issue_id]
        assert client.get("/card-issues").status_code == 400
        assert client.get("/card-issues/missing").status_code == 404

        agents = client.get("/agents", params={"hotel": HOTEL})
        assert [item["id"] for item in agents.json()] == [agent_id]


def test_failed_issue_retried_and_reported_by_owner_only(settings, fake_agent):
    app = create_app(settings=settings, client=fake_agent, poll_health=False)

    with TestClient(app) as client:
        owner_id, owner_headers = _pair(client, "fp-desk-1")
        other_id, other_headers = _pair(client, "fp-desk-2")
        booking = client.post("/card-issues/bookings", json={"hotel_id": HOTEL, "booking": BOOKING})
        assert booking.status_code == 201
        assert booking.json()["agent_online"] is True
        issue_id = booking.json()["issues"][0]["id"]

        claim = client.post(f"/agents/{owner_id}/claim", headers=owner_headers, json={"issue_id": issue_id})
        assert claim.json()["claimed"] is True
        second = client.post(f"/agents/{other_id}/claim", headers=other_headers, json={"issue_id": issue_id})
        assert second.json()["claimed"] is False

        hijack = client.patch(
            f"/agents/{other_id}/card-issues/{issue_id}/status",
            headers=other_headers,
            json={"status": "done"},
        )
        assert hijack.status_code == 403

        failed = client.patch(
            f"/agents/{owner_id}/card-issues/{issue_id}/status",
            headers=owner_headers,
            json={"status": "failed", "error_message": "Card removed"},
        )
        assert failed.json()["error_message"] == "Card removed"

        retried = client.post(f"/card-issues/{issue_id}/retry")
        assert retried.status_code == 200
        assert retried.json()["status"] == "pending"
        assert retried.json()["retry_count"] == 1

        logged = client.post(
            f"/agents/{owner_id}/log",
            headers=owner_headers,
            json={"event_type": "reader_connected", "payload": {"port": "USB1"}},
        )
        assert logged.status_code == 201
        logs = client.get(f"/agents/{owner_id}/logs")
        assert [entry["event_type"] for entry in logs.json()] == ["reader_connected"]


def test_pairing_rejects_reused_token(settings, fake_agent):
    app = create_app(settings=settings, client=fake_agent, poll_health=False)

    with TestClient(app) as client:
        token = client.post("/pairing/generate", json={"hotel_id": HOTEL, "agent_name": "Front Desk"}).json()["token"]
        first = client.post("/pairing/confirm", json={"token": token, "fingerprint": "fp-1"})
        assert first.status_code == 201
        reused = client.post("/pairing/confirm", json={"token": token, "fingerprint": "fp-2"})
        assert reused.status_code == 400


def test_simulator_contract():
    reader = SimulatedReader(failing_card_types={CardType.ELEVATOR}, detect_supported=False)
    payload = {
        "cardType": "room",
        "bookingId": "4821",
        "roomNumber": "305",
        "guestId": "G-1001",
        "checkIn": "2026-10-18T15:00:00Z",
        "checkOut": "2026-10-21T11:00:00Z",
        "facilityId": HOTEL,
    }

    with TestClient(create_simulator(reader)) as client:
        assert client.get("/status").json()["up"] is True
        assert client.get("/reader/status").json() == {"connected": True}
        assert client.post("/cards/detect").status_code == 404

        written = client.post("/cards/write", json=payload).json()
        assert written["cardUID"]
        failed = client.post("/cards/write", json={**payload, "cardType": "elevator"}).json()
        assert failed == {"error": "Operation timed out. Please try again."}

        reader.service_up = False
        assert client.get("/status").status_code == 503
        assert client.get("/reader/status").json() == {"connected": False}

    assert len(reader.writes) == 2


def test_devices_registered_at_pairing_are_listed(settings, fake_agent):
    app = create_app(settings=settings, client=fake_agent, poll_health=False)

    with TestClient(app) as client:
        token = client.post("/pairing/generate", json={"hotel_id": HOTEL, "agent_name": "Front Desk"}).json()["token"]
        paired = client.post(
            "/pairing/confirm",
            json={
                "token": token,
                "fingerprint": "fp-desk-1",
                "device_info": {"serial": "ENC-0042", "vendor": "Acme Locks"},
            },
        )
        assert paired.status_code == 201
        agent_id = paired.json()["agent"]["id"]

        by_hotel = client.get("/devices", params={"hotel": HOTEL})
        assert by_hotel.status_code == 200
        [device] = by_hotel.json()
        assert device["agent_id"] == agent_id
        assert device["model"] == "Unknown"
        assert device["serial"] == "ENC-0042"
        assert device["connected"] is True
        assert client.get("/devices", params={"agent": agent_id}).json() == [device]
        assert client.get("/devices", params={"hotel": "HOTEL-2"}).json() == []

        missing_filter = client.get("/devices")
        assert missing_filter.status_code == 400
        assert missing_filter.json()["detail"] == "agent or hotel parameter is required"


def test_console_host_works_its_desk_queue(settings, fake_agent):
    with TestClient(create_app(settings=settings, client=fake_agent, poll_health=False)) as client:
        agent_id, _ = _pair(client)

    desk_settings = replace(settings, desk_agent_id=agent_id, agent_poll_interval_seconds=0.05)
    app = create_app(settings=desk_settings, client=fake_agent, poll_health=False)
    assert app.state.agent_worker is not None

    with TestClient(app) as client:
        created = client.post(
            "/card-issues",
            json={
                "hotel_id": HOTEL,
                "booking_id": "4821",
                "card_type": "room",
                "payload": {"cardType": "room", "bookingId": "4821", "roomNumber": "305"},
            },
        ).json()["issue"]

        deadline = time.monotonic() + 5
        issue = created
        while issue["status"] != "done" and time.monotonic() < deadline:
            time.sleep(0.05)
            issue = client.get(f"/card-issues/{created['id']}").json()

        assert issue["status"] == "done"
        assert issue["agent_id"] == agent_id
    assert [write["cardType"] for write in fake_agent.writes] == ["room"]
