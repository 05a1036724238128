from skyfleet.actors.messages import CancelReadiness, NodeDead, NodeReady
from skyfleet.actors.readiness import Phase, readiness_actor

__all__ = [
    "CancelReadiness",
    "NodeDead",
    "NodeReady",
    "Phase",
    "readiness_actor",
]
