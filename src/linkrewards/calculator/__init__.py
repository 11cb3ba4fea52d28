"""
linkrewards/calculator/

Reward input construction and the allocation engine boundary.
"""

from .inputs import (
    DemandType,
    SolverDevice,
    PrivateLink,
    PublicLink,
    Demand,
    DemandOverride,
    CityStat,
    ShapleyInputs,
    build_devices,
    build_private_links,
    build_public_links,
    build_city_stats,
    build_demands,
    build_reward_inputs,
    contiguous_links,
)
from .engine import (
    Allocation,
    OperatorShare,
    AllocationEngine,
    FunctionEngine,
    run_engine,
    load_engine,
)

__all__ = [
    "DemandType",
    "SolverDevice",
    "PrivateLink",
    "PublicLink",
    "Demand",
    "DemandOverride",
    "CityStat",
    "ShapleyInputs",
    "build_devices",
    "build_private_links",
    "build_public_links",
    "build_city_stats",
    "build_demands",
    "build_reward_inputs",
    "contiguous_links",
    "Allocation",
    "OperatorShare",
    "AllocationEngine",
    "FunctionEngine",
    "run_engine",
    "load_engine",
]
