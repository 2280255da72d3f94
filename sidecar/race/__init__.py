from .detection import DetectionRace
from .engine import CompletionRaceEngine
from .harvest import Harvester
from .models import CompletionSignal, HarvestReport, RaceOutcome
from .settle import BranchDeclined, RaceResult, SettleCell, first_wins

__all__ = [
    "BranchDeclined",
    "CompletionRaceEngine",
    "CompletionSignal",
    "DetectionRace",
    "HarvestReport",
    "Harvester",
    "RaceOutcome",
    "RaceResult",
    "SettleCell",
    "first_wins",
]
