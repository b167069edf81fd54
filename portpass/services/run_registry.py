from __future__ import annotations

from portpass.services.cancellation import CancellationToken


class RunRegistry:
    """Map of entity key -> in-flight run token.

    Only consulted when ``enforce_single_run_per_entity`` is enabled; by
    default two runs for the same entity may overlap.
    """

    def __init__(self) -> None:
        self._runs: dict[str, CancellationToken] = {}

    @staticmethod
    def key(entity_type: str, entity_id: str) -> str:
        return f"{entity_type}:{entity_id}"

    def try_acquire(self, entity_type: str, entity_id: str, token: CancellationToken) -> bool:
        key = self.key(entity_type, entity_id)
        if key in self._runs:
            return False
        self._runs[key] = token
        return True

    def release(self, entity_type: str, entity_id: str, token: CancellationToken) -> None:
        key = self.key(entity_type, entity_id)
        if self._runs.get(key) is token:
            del self._runs[key]

    def is_running(self, entity_type: str, entity_id: str) -> bool:
        return self.key(entity_type, entity_id) in self._runs


run_registry = RunRegistry()
