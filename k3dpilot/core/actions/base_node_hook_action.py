from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from k3dpilot.core.cluster.types import Node
    from k3dpilot.core.runtimes.base_runtime import BaseRuntime


class BaseNodeHookAction(ABC):
    def __init__(self, name: str, condition: bool = True):
        self.name = name
        self.condition = condition

        self._validate()

    @abstractmethod
    async def run(self, runtime: BaseRuntime, node: Node) -> None:
        pass

    @abstractmethod
    def _validate(self):
        pass
