"""Inbound message type identifiers."""

from __future__ import annotations

from enum import Enum


class MessageType(str, Enum):
    EXECUTE_PROMPT = "EXECUTE_PROMPT"
    BROADCAST_PROMPT = "BROADCAST_PROMPT"
    HARVEST_RESPONSE = "HARVEST_RESPONSE"
    CHECK_READINESS = "CHECK_READINESS"
    ATTEMPT_RECOVERY = "ATTEMPT_RECOVERY"
    GET_AVAILABLE_TABS = "GET_AVAILABLE_TABS"
    RESET_SESSION = "RESET_SESSION"
    PING = "PING"
    FLIGHT_STATUS = "FLIGHT_STATUS"
    CANCEL_FLIGHT = "CANCEL_FLIGHT"
    GET_RECENT_FLIGHTS = "GET_RECENT_FLIGHTS"
    GET_STATS = "GET_STATS"
    EXECUTE_WORKFLOW = "EXECUTE_WORKFLOW"
    WORKFLOW_STATUS = "WORKFLOW_STATUS"
    WORKFLOW_RESULT = "WORKFLOW_RESULT"
