from relay.services.flows.base import (
    FlowContext,
    FlowDefinition,
    FlowDefinitionError,
    FlowOutcome,
    FlowRegistry,
    Transition,
)
from relay.services.flows.booking import BOOKING_FLOW
from relay.services.flows.effects import FlowEffects, available_slots
from relay.services.flows.executor import FlowExecutor, FlowTurn
from relay.services.flows.lead_capture import LEAD_CAPTURE_FLOW


def build_registry() -> FlowRegistry:
    registry = FlowRegistry()
    registry.register(BOOKING_FLOW)
    registry.register(LEAD_CAPTURE_FLOW)
    return registry


__all__ = [
    "FlowContext",
    "FlowDefinition",
    "FlowDefinitionError",
    "FlowEffects",
    "FlowExecutor",
    "FlowOutcome",
    "FlowRegistry",
    "FlowTurn",
    "Transition",
    "available_slots",
    "build_registry",
]
