"""
Behavior models, one per component family.
"""

from typing import Dict, Type

from archsim.core.models import ComponentDefinition
from archsim.core.taxonomy import ComponentFamily
from ..context import SimulationContext
from .base import BehaviorModel
from .cache import CacheBehavior
from .compute import ComputeBehavior, SourceBehavior
from .database import DatabaseBehavior
from .gateway import GatewayBehavior
from .load_balancer import LoadBalancerBehavior
from .queue import QueueBehavior

BEHAVIOR_MODELS: Dict[ComponentFamily, Type[BehaviorModel]] = {
    ComponentFamily.COMPUTE: ComputeBehavior,
    ComponentFamily.SOURCE: SourceBehavior,
    ComponentFamily.QUEUE: QueueBehavior,
    ComponentFamily.CACHE: CacheBehavior,
    ComponentFamily.LOAD_BALANCER: LoadBalancerBehavior,
    ComponentFamily.DATABASE: DatabaseBehavior,
    ComponentFamily.GATEWAY: GatewayBehavior,
}


def create_behavior(component: ComponentDefinition, family: ComponentFamily,
                    ctx: SimulationContext) -> BehaviorModel:
    """Instantiate the behavior model for a component's family."""
    return BEHAVIOR_MODELS[family](component, ctx)


__all__ = [
    "BEHAVIOR_MODELS",
    "BehaviorModel",
    "CacheBehavior",
    "ComputeBehavior",
    "DatabaseBehavior",
    "GatewayBehavior",
    "LoadBalancerBehavior",
    "QueueBehavior",
    "SourceBehavior",
    "create_behavior",
]
