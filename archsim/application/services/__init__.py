from .simulation_service import SimulationService, ComparisonReport

__all__ = [
    "SimulationService",
    "ComparisonReport",
]
