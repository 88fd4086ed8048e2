"""Streamlit reception console for KeyDesk card provisioning."""

from __future__ import annotations

import os
import time
from typing import Any, Dict, List, Optional

import pandas as pd
import requests
import streamlit as st

# ==========================================
# Configuration & Constants
# ==========================================
API_BASE_URL = os.getenv("API_BASE_URL", "http://127.0.0.1:8000")
SEQUENCE_TIMEOUT_SECONDS = 300
RUN_POLL_SECONDS = 0.5

st.set_page_config(
    page_title="KeyDesk Console",
    page_icon="🔑",
    layout="wide",
)

# ==========================================
# API Helper Functions
# ==========================================
def _detail(response: requests.Response) -> str:
    try:
        return str(response.json().get("detail", response.text))
    except ValueError:
        return response.text


def api_get(path: str, params: Optional[Dict[str, Any]] = None) -> Optional[Any]:
    try:
        response = requests.get(f"{API_BASE_URL}{path}", params=params, timeout=10)
        if not response.ok:
            st.error(f"{path} failed: {_detail(response)}")
            return None
        return response.json()
    except requests.exceptions.RequestException as e:
        st.error(f"Backend connection failed: {e}")
        return None


def api_post(path: str, payload: Optional[Dict[str, Any]] = None, timeout: float = 10) -> Optional[Any]:
    try:
        response = requests.post(f"{API_BASE_URL}{path}", json=payload or {}, timeout=timeout)
        if not response.ok:
            st.error(f"{path} failed: {_detail(response)}")
            return None
        return response.json()
    except requests.exceptions.RequestException as e:
        st.error(f"Backend connection failed: {e}")
        return None


# ==========================================
# UI Page Functions
# ==========================================
def render_bridge_status() -> bool:
    status = api_get("/bridge/status")
    if status is None:
        return False

    col1, col2 = st.columns(2)
    col1.metric("Bridge Service", "Running" if status["service_up"] else "Stopped")
    col2.metric("Card Reader", "Connected" if status["reader_connected"] else "Disconnected")

    if not status["service_up"]:
        st.error("Card reader service is not running. Please start the bridge service on your desktop.")
    elif not status["reader_connected"]:
        st.warning("Card reader is not connected. Please check the USB connection.")
        if st.button("Reconnect Reader"):
            result = api_post("/bridge/reconnect", timeout=15)
            if result and result.get("ok"):
                st.success("Reader reconnected.")
            else:
                st.error("Reconnect failed. Check the reader cable and try again.")
    return bool(status["ready"])


def follow_sequence_run(run_id: str) -> Optional[Dict[str, Any]]:
    """Show the live instruction, stall notice and progress until the run ends."""
    instruction = st.empty()
    stall_notice = st.empty()
    bar = st.progress(0.0)
    events: List[Dict[str, Any]] = []
    after = 0
    deadline = time.monotonic() + SEQUENCE_TIMEOUT_SECONDS
    while time.monotonic() < deadline:
        run = api_get(f"/sequences/runs/{run_id}", {"after": after})
        if run is None:
            api_post(f"/sequences/runs/{run_id}/abandon")
            return None
        events.extend(run["events"])
        after = run["last_sequence"]
        bar.progress(run["overall_progress"] / 100.0)
        if run["instruction"]:
            instruction.info(run["instruction"])
        if run["stall_notice"]:
            stall_notice.warning(run["stall_notice"])
        else:
            stall_notice.empty()
        if run["state"] != "running":
            run["events"] = events
            return run
        time.sleep(RUN_POLL_SECONDS)

    api_post(f"/sequences/runs/{run_id}/abandon")
    st.error("Card programming timed out and was abandoned. Start again when the guest is ready.")
    return None


def render_run_result(run: Dict[str, Any]) -> None:
    if run["state"] == "failed":
        st.error(f"Card programming stopped: {run['error']}")
        return
    result = run["result"]
    if result["success"]:
        st.success(result["message"])
    else:
        st.warning(result["message"])
    st.dataframe(pd.DataFrame(result["results"]), use_container_width=True)
    with st.expander("Progress log"):
        st.dataframe(pd.DataFrame(run["events"]), use_container_width=True)


def render_sequence_page() -> None:
    st.header("🔑 Program Guest Cards")
    ready = render_bridge_status()
    st.markdown("---")

    col1, col2, col3 = st.columns(3)
    with col1:
        booking_id = st.text_input("Booking ID", "4821")
        room_number = st.text_input("Room Number", "305")
    with col2:
        guest_id = st.text_input("Guest ID", "G-1001")
        facility_id = st.text_input("Facility ID", "HOTEL-1")
    with col3:
        check_in = st.text_input("Check-in", "2026-10-18T15:00:00Z")
        check_out = st.text_input("Check-out", "2026-10-21T11:00:00Z")

    active_run = st.session_state.get("sequence_run_id")
    if st.button("Start Card Programming", type="primary", disabled=not ready or bool(active_run)):
        started = api_post(
            "/sequences/runs",
            {
                "booking_id": booking_id,
                "room_number": room_number,
                "guest_id": guest_id,
                "check_in": check_in,
                "check_out": check_out,
                "facility_id": facility_id,
            },
        )
        if started:
            st.session_state["sequence_run_id"] = started["run_id"]
            st.rerun()

    if active_run:
        # Clicking cancel reruns the page, which stops the polling loop below.
        if st.button("Cancel Programming"):
            api_post(f"/sequences/runs/{active_run}/abandon")
        run = follow_sequence_run(active_run)
        st.session_state.pop("sequence_run_id", None)
        if run is not None:
            render_run_result(run)


def render_queue_page(hotel_id: str) -> None:
    st.header("📋 Card Issue Queue")

    col1, col2, col3 = st.columns(3)
    if col1.button("Dispatch Pending"):
        dispatched = api_post("/card-issues/dispatch", {"hotel_id": hotel_id})
        if dispatched is not None:
            st.info(f"Dispatched {len(dispatched)} card issues.")
    if col2.button("Reconcile"):
        report = api_post("/card-issues/reconcile", {"hotel_id": hotel_id})
        if report is not None:
            st.info(f"Failed {report['total_failed']} card issues that no desk can finish.")
    status_filter = col3.selectbox(
        "Status",
        ["all", "pending", "queued", "in_progress", "done", "failed"],
    )

    params: Dict[str, Any] = {"hotel": hotel_id}
    if status_filter != "all":
        params["status"] = status_filter
    issues: List[Dict[str, Any]] = api_get("/card-issues", params) or []
    if not issues:
        st.info("No card issues for this hotel.")
        return

    frame = pd.DataFrame(issues)[
        ["id", "booking_id", "room_number", "card_type", "status", "agent_id", "retry_count", "error_message", "updated_at"]
    ]
    st.dataframe(frame, use_container_width=True)

    failed = [issue for issue in issues if issue["status"] == "failed"]
    if failed:
        st.write("### Failed Cards")
        for issue in failed:
            col_a, col_b = st.columns([4, 1])
            col_a.write(f"{issue['card_type']} card, booking {issue['booking_id']}: {issue['error_message']}")
            if col_b.button("Retry", key=f"retry-{issue['id']}"):
                if api_post(f"/card-issues/{issue['id']}/retry") is not None:
                    st.success("Queued for retry.")


def render_agents_page(hotel_id: str) -> None:
    st.header("🖥️ Desk Agents")
    agents = api_get("/agents", {"hotel": hotel_id}) or []
    if agents:
        st.dataframe(pd.DataFrame(agents), use_container_width=True)
    else:
        st.info("No agents paired for this hotel.")

    st.write("### Card Encoders")
    devices = api_get("/devices", {"hotel": hotel_id}) or []
    if devices:
        st.dataframe(pd.DataFrame(devices), use_container_width=True)
    else:
        st.caption("No encoders registered. Pass --model/--serial when pairing a desk.")

    st.write("### Pair a New Desk")
    agent_name = st.text_input("Desk name", "Front Desk 1")
    if st.button("Generate Pairing Token"):
        token = api_post("/pairing/generate", {"hotel_id": hotel_id, "agent_name": agent_name})
        if token:
            st.code(token["token"])
            st.caption(f"Expires at {token['expires_at']}")


# ==========================================
# Main App Router
# ==========================================
def main() -> None:
    st.sidebar.title("KeyDesk")
    st.sidebar.markdown("---")

    hotel_id = st.sidebar.text_input("Hotel", "HOTEL-1")
    page = st.sidebar.radio(
        "Navigation Module",
        ["Program Cards", "Card Queue", "Desk Agents"],
    )

    st.sidebar.markdown("---")
    st.sidebar.caption(f"API: {API_BASE_URL}")

    if page == "Program Cards":
        render_sequence_page()
    elif page == "Card Queue":
        render_queue_page(hotel_id)
    elif page == "Desk Agents":
        render_agents_page(hotel_id)

if __name__ == "__main__":
    main()
