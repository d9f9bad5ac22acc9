from __future__ import annotations

from typing import TYPE_CHECKING

from typing_extensions import override

from k3dpilot.core.actions.base_node_hook_action import BaseNodeHookAction

if TYPE_CHECKING:
    from k3dpilot.core.cluster.types import Node
    from k3dpilot.core.runtimes.base_runtime import BaseRuntime


class WriteFileAction(BaseNodeHookAction):
    def __init__(self, name: str, content: bytes | str, dest: str, mode: int = 0o644, condition: bool = True):
        self.content = content.encode('utf-8') if isinstance(content, str) else content
        self.dest = dest
        self.mode = mode

        super().__init__(name=name, condition=condition)

    @override
    async def run(self, runtime: BaseRuntime, node: Node) -> None:
        await runtime.write_to_node(node, self.content, self.dest, self.mode)

    def _validate(self):
        if not self.dest.startswith('/'):
            raise ValueError(f'Destination {self.dest} must be an absolute path.')
