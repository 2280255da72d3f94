from .models import ALLOWED_TRANSITIONS, Flight, FlightMetadata, FlightSnapshot, FlightState, InvalidTransition

__all__ = [
    "ALLOWED_TRANSITIONS",
    "Flight",
    "FlightMetadata",
    "FlightSnapshot",
    "FlightState",
    "InvalidTransition",
]
