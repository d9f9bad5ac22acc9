from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING

from typing_extensions import override

from k3dpilot.core.actions.base_node_hook_action import BaseNodeHookAction

if TYPE_CHECKING:
    from k3dpilot.core.cluster.types import Node
    from k3dpilot.core.runtimes.base_runtime import BaseRuntime


class RewriteFileAction(BaseNodeHookAction):
    def __init__(
        self, name: str, path: str, rewrite: Callable[[str], str], mode: int = 0o644, condition: bool = True
    ):
        self.path = path
        self.rewrite = rewrite
        self.mode = mode

        super().__init__(name=name, condition=condition)

    @override
    async def run(self, runtime: BaseRuntime, node: Node) -> None:
        content = await runtime.exec_in_node(node, ['cat', self.path])
        await runtime.write_to_node(node, self.rewrite(content).encode('utf-8'), self.path, self.mode)

    def _validate(self):
        if not self.path.startswith('/'):
            raise ValueError(f'Path {self.path} must be an absolute path.')
