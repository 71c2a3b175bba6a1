"""In-memory registry of experiment records."""

import threading
from typing import Callable, Dict, List, Optional

from .models import ExperimentRecord, ExperimentStatus

RecordMutator = Callable[[ExperimentRecord], ExperimentRecord]


class JobRegistry:
    """Concurrency-safe mapping from experiment id to its current record.

    Records are immutable values, so a snapshot handed out by ``get`` or
    ``list_all`` can never be observed half-written. All status changes go
    through ``update_if_status``, which compares and swaps under the lock.
    """

    def __init__(self):
        self._records: Dict[str, ExperimentRecord] = {}
        self._lock = threading.Lock()

    def upsert(self, record: ExperimentRecord) -> None:
        with self._lock:
            self._records[record.id] = record

    def get(self, experiment_id: str) -> Optional[ExperimentRecord]:
        with self._lock:
            return self._records.get(experiment_id)

    def list_all(self) -> List[ExperimentRecord]:
        with self._lock:
            return list(self._records.values())

    def update_if_status(
        self,
        experiment_id: str,
        expected_status: ExperimentStatus,
        mutator: RecordMutator,
    ) -> bool:
        """Apply ``mutator`` only while the record still has ``expected_status``.

        Returns True when the new value was stored. The mutator runs under the
        registry lock and must not block or touch the registry itself.
        """
        with self._lock:
            current = self._records.get(experiment_id)
            if current is None or current.status != expected_status:
                return False
            updated = mutator(current)
            if updated.id != current.id:
                raise ValueError(
                    f"Mutator changed record id from {current.id!r} to {updated.id!r}"
                )
            if current.status.is_terminal and updated.status != current.status:
                raise ValueError(
                    f"Record {current.id} is already {current.status.value}; "
                    f"cannot move to {updated.status.value}"
                )
            self._records[experiment_id] = updated
            return True

    def __contains__(self, experiment_id: object) -> bool:
        with self._lock:
            return experiment_id in self._records

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
