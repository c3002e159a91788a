"""Registry mapping process types to their batch workers."""

import logging

from musicscan.domain.exceptions import ConfigurationError
from musicscan.domain.ports import IBatchWorker

logger = logging.getLogger(__name__)


class WorkerRegistry:
    """Lookup table process_type → IBatchWorker.

    Hey future me - an item type may only belong to ONE process type! Recovery and
    retry_failed find orphaned/failed items by item_type, so a shared item type would
    let a blog tick touch composer items.
    """

    def __init__(self, workers: list[IBatchWorker] | None = None) -> None:
        self._workers: dict[str, IBatchWorker] = {}
        for worker in workers or []:
            self.register(worker)

    def register(self, worker: IBatchWorker) -> None:
        """Register a worker for its process type.

        Raises:
            ConfigurationError: If the process type or one of its item types is taken
        """
        if worker.process_type in self._workers:
            raise ConfigurationError(
                f"Worker for process type '{worker.process_type}' already registered"
            )
        for other in self._workers.values():
            shared = set(worker.item_types) & set(other.item_types)
            if shared:
                raise ConfigurationError(
                    f"Item types {sorted(shared)} already belong to '{other.process_type}'"
                )
        self._workers[worker.process_type] = worker
        logger.debug(
            "Registered batch worker",
            extra={
                "process_type": worker.process_type,
                "item_types": list(worker.item_types),
            },
        )

    def get(self, process_type: str) -> IBatchWorker:
        """Get the worker for a process type.

        Raises:
            ConfigurationError: If no worker is registered for it
        """
        worker = self._workers.get(process_type)
        if worker is None:
            raise ConfigurationError(f"Unknown process type: {process_type}")
        return worker

    def __contains__(self, process_type: object) -> bool:
        return process_type in self._workers

    def process_types(self) -> list[str]:
        """Registered process types, sorted."""
        return sorted(self._workers)
