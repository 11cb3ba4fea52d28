"""
linkrewards/calculator/engine.py

Allocation engine boundary.

The Shapley solver is an external dependency: the pipeline hands it the
private links and demands it built and stores whatever allocation comes
back. Engines are plugged in by import path ("package.module:attribute")
and may be an AllocationEngine subclass, an instance, or a plain
function with the signature solve(private_links, demands).
"""

import importlib
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from ..errors import ConfigurationError, SolverError
from .inputs import Demand, PrivateLink

logger = logging.getLogger("linkrewards.calculator.engine")


@dataclass(frozen=True)
class OperatorShare:
    operator: str
    value: float
    proportion: float

    def to_dict(self) -> dict:
        return {"operator": self.operator, "value": self.value, "proportion": self.proportion}

    @classmethod
    def from_dict(cls, data: dict) -> "OperatorShare":
        return cls(operator=data["operator"], value=data["value"], proportion=data["proportion"])


@dataclass
class Allocation:
    """Engine output: one share per operator."""
    shares: List[OperatorShare] = field(default_factory=list)
    engine: str = ""

    def total_proportion(self) -> float:
        return sum(s.proportion for s in self.shares)

    def to_dict(self) -> dict:
        return {
            "engine": self.engine,
            "shares": [s.to_dict() for s in sorted(self.shares, key=lambda s: s.operator)],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Allocation":
        return cls(
            shares=[OperatorShare.from_dict(s) for s in data.get("shares", [])],
            engine=data.get("engine", ""),
        )


class AllocationEngine(ABC):
    """Opaque solver from validated inputs to an Allocation."""

    name = "engine"

    @abstractmethod
    def solve(self, private_links: List[PrivateLink], demands: List[Demand]) -> Allocation:
        """Return the allocation or raise SolverError."""
        pass


class FunctionEngine(AllocationEngine):
    """Adapts a plain solve(private_links, demands) callable."""

    def __init__(self, fn: Callable, name: Optional[str] = None):
        self.fn = fn
        self.name = name or getattr(fn, "__name__", "function")

    def solve(self, private_links: List[PrivateLink], demands: List[Demand]) -> Allocation:
        result = self.fn(private_links, demands)
        if isinstance(result, Allocation):
            return result
        if isinstance(result, dict):
            return Allocation.from_dict(result)
        raise SolverError(f"engine {self.name} returned {type(result).__name__}, expected Allocation")


def run_engine(engine: AllocationEngine, private_links: List[PrivateLink], demands: List[Demand]) -> Allocation:
    """Call the engine, normalising any failure to SolverError."""
    if not private_links:
        raise SolverError("no private links to allocate over")
    if not demands:
        raise SolverError("no demands to allocate over")
    try:
        allocation = engine.solve(private_links, demands)
    except SolverError:
        raise
    except Exception as e:
        raise SolverError(f"engine {engine.name} failed: {type(e).__name__}: {e}") from e
    if not allocation.engine:
        allocation.engine = engine.name
    logger.info(f"Engine {engine.name} allocated across {len(allocation.shares)} operators")
    return allocation


def load_engine(path: str) -> AllocationEngine:
    """Resolve "package.module:attribute" to an AllocationEngine."""
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise ConfigurationError(f"engine path must look like 'module:attribute', got {path!r}")
    try:
        module = importlib.import_module(module_name)
        target = getattr(module, attr)
    except (ImportError, AttributeError) as e:
        raise ConfigurationError(f"cannot load engine {path!r}: {e}")

    if isinstance(target, AllocationEngine):
        return target
    if isinstance(target, type) and issubclass(target, AllocationEngine):
        return target()
    if callable(target):
        return FunctionEngine(target, name=attr)
    raise ConfigurationError(f"engine {path!r} is not an AllocationEngine or callable")
