from models.base import Base
from models.job import Job, JobState
from models.event import Event
from models.damage import DamageFinding, DamageReport
from models.weather import WeatherObservation
from models.proposal import Proposal

__all__ = [
    "Base",
    "Job",
    "JobState",
    "Event",
    "DamageFinding",
    "DamageReport",
    "WeatherObservation",
    "Proposal",
]
