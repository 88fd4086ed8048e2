"""Simulated local hardware agent for development and tests.

Run it on the bridge port to exercise the console without a reader:

    uvicorn keydesk.simulator:app --port 3001

SIMULATOR_FAILING_CARD_TYPES (comma separated) makes those card types
answer with an error instead of a card UID.
"""

from __future__ import annotations

import os
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from keydesk.domain.models import CardType
from keydesk.utils.clock import utc_now_iso
from keydesk.utils.logger import get_logger


logger = get_logger(__name__)


class CardWriteRequest(BaseModel):
    cardType: CardType
    bookingId: str = Field(min_length=1)
    roomNumber: str = Field(min_length=1)
    guestId: str = Field(min_length=1)
    checkIn: str
    checkOut: str
    facilityId: str


@dataclass
class SimulatedReader:
    service_up: bool = True
    connected: bool = True
    card_present: bool = True
    detect_supported: bool = True
    failing_card_types: set[CardType] = field(default_factory=set)
    error_message: str = "Operation timed out. Please try again."
    writes: list[dict[str, Any]] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def write(self, payload: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            self.writes.append(payload)
        card_type = CardType(payload["cardType"])
        if card_type in self.failing_card_types:
            logger.info("Simulated write failure for %s", card_type.value)
            return {"error": self.error_message}
        return {"cardUID": uuid.uuid4().hex[:14].upper(), "timestamp": utc_now_iso()}


def _failing_types_from_env() -> set[CardType]:
    raw = os.getenv("SIMULATOR_FAILING_CARD_TYPES", "")
    return {CardType(item.strip().lower()) for item in raw.split(",") if item.strip()}


def create_simulator(reader: Optional[SimulatedReader] = None) -> FastAPI:
    state = reader or SimulatedReader(failing_card_types=_failing_types_from_env())
    app = FastAPI(title="Simulated Local Hardware Agent")
    app.state.reader = state

    @app.get("/status")
    async def status() -> JSONResponse:
        if not state.service_up:
            return JSONResponse(status_code=503, content={"up": False})
        return JSONResponse(content={"up": True, "reader": "simulated"})

    @app.get("/reader/status")
    async def reader_status() -> dict[str, bool]:
        return {"connected": state.service_up and state.connected}

    @app.post("/reader/reconnect")
    async def reader_reconnect() -> dict[str, bool]:
        if state.service_up:
            state.connected = True
        return {"ok": state.service_up}

    @app.post("/cards/detect")
    async def detect_card() -> JSONResponse:
        if not state.detect_supported:
            return JSONResponse(status_code=404, content={"detail": "Not Found"})
        return JSONResponse(content={"detected": state.card_present})

    @app.post("/cards/write")
    def write_card(payload: CardWriteRequest) -> dict[str, Any]:
        if not state.service_up or not state.connected:
            return {"error": "Card reader is not connected"}
        return state.write(payload.model_dump(mode="json"))

    return app


app = create_simulator()
