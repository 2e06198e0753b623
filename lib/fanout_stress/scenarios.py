"""Scenario matrix: payload encoding x broker policy flags."""
from dataclasses import dataclass
from enum import Enum
from itertools import product
from typing import Iterable, List, Optional


class PayloadEncoding(Enum):
    TEXT = "text"
    MAP = "map"
    OBJECT = "object"


BOOLEAN_VALUES = (True, False)


@dataclass(frozen=True)
class BrokerPolicy:
    """Broker-side switches applied to the default destination policy and store."""
    reduce_memory_footprint: bool = False
    concurrent_store_and_dispatch: bool = True


@dataclass(frozen=True)
class ScenarioConfig:
    encoding: PayloadEncoding
    reduce_memory_footprint: bool
    concurrent_store_and_dispatch: bool

    @property
    def policy(self) -> BrokerPolicy:
        return BrokerPolicy(
            reduce_memory_footprint=self.reduce_memory_footprint,
            concurrent_store_and_dispatch=self.concurrent_store_and_dispatch
        )

    @property
    def scenario_id(self) -> str:
        return (
            f"{self.encoding.value}"
            f"-rmf:{str(self.reduce_memory_footprint).lower()}"
            f"-csd:{str(self.concurrent_store_and_dispatch).lower()}"
        )

    def __str__(self) -> str:
        return (
            f"Type:{self.encoding.name}; "
            f"ReduceMemoryFootPrint:{self.reduce_memory_footprint}; "
            f"ConcurrentDispatch:{self.concurrent_store_and_dispatch}"
        )


def scenario_matrix(
    encodings: Iterable[PayloadEncoding] = tuple(PayloadEncoding),
    reduce_memory_footprint: Iterable[bool] = BOOLEAN_VALUES,
    concurrent_store_and_dispatch: Iterable[bool] = BOOLEAN_VALUES
) -> List[ScenarioConfig]:
    """Every combination of the given dimensions, 12 by default."""
    return [
        ScenarioConfig(encoding, rmf, csd)
        for encoding, rmf, csd in product(
            encodings, reduce_memory_footprint, concurrent_store_and_dispatch
        )
    ]


def filter_scenarios(
    scenarios: Iterable[ScenarioConfig],
    encodings: Optional[Iterable[PayloadEncoding]] = None,
    reduce_memory_footprint: Optional[bool] = None,
    concurrent_store_and_dispatch: Optional[bool] = None
) -> List[ScenarioConfig]:
    wanted = set(encodings) if encodings else None
    return [
        s for s in scenarios
        if (wanted is None or s.encoding in wanted)
        and (reduce_memory_footprint is None or s.reduce_memory_footprint == reduce_memory_footprint)
        and (concurrent_store_and_dispatch is None
             or s.concurrent_store_and_dispatch == concurrent_store_and_dispatch)
    ]
