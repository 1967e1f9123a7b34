"""
Transfer Progress

Mutable snapshot of an upload or download, passed to progress callbacks
after every change. The CLI renders it as a rich progress bar.
"""

from dataclasses import dataclass
from typing import Callable


@dataclass
class TransferProgress:
    total_fragments: int
    completed_fragments: int = 0
    bytes_transferred: int = 0
    retries: int = 0
    total_batches: int = 0
    current_batch: int = 0
    # initializing | uploading | cooldown | downloading | complete | failed
    phase: str = 'initializing'

    @property
    def fraction_done(self) -> float:
        if not self.total_fragments:
            return 1.0
        return self.completed_fragments / self.total_fragments

    @property
    def progress_percent(self) -> float:
        return 100.0 * self.fraction_done


ProgressCallback = Callable[[TransferProgress], None]
