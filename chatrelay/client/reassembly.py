"""
Delta reassembly.

Deltas can arrive out of order or in bursts. ``DeltaBuffer`` batches them for a
short debounce window, then merges the batch into everything received for the
current assistant turn and rebuilds the text by ``seq`` order. A fragment
whose ``seq`` was already received is a redelivery and is dropped. Fragments
without a usable ``seq`` are all kept, in arrival order after the numbered ones.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Callable, List, Optional, Set

from chatrelay.settings import settings


@dataclass(frozen=True)
class Fragment:
    seq: Optional[int]
    text: str


def _order_key(fragment: Fragment) -> tuple[bool, int]:
    return (fragment.seq is None, fragment.seq if fragment.seq is not None else 0)


def rebuild_text(fragments: List[Fragment]) -> str:
    """Concatenate fragments in ``seq`` order (stable; unknown seq last)."""
    return "".join(fragment.text for fragment in sorted(fragments, key=_order_key))


class DeltaBuffer:
    """
    Debounced buffer for one assistant turn.

    ``push`` only queues; the rebuild happens on ``flush``, which fires when the
    debounce timer elapses, on a terminal event (``take``) or on ``close``.
    """

    def __init__(
        self,
        *,
        debounce_ms: Optional[int] = None,
        on_flush: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.debounce_ms = settings.delta_debounce_ms if debounce_ms is None else debounce_ms
        self.on_flush = on_flush
        self.pending: List[Fragment] = []
        self.accumulated: List[Fragment] = []
        self.text = ""
        self._seen: Set[int] = set()
        self._timer: Optional[asyncio.TimerHandle] = None

    def push(self, seq: Optional[int], text: str) -> None:
        if seq is not None:
            if seq in self._seen:
                return
            self._seen.add(seq)
        self.pending.append(Fragment(seq=seq, text=text or ""))
        if self._timer is None:
            loop = asyncio.get_running_loop()
            self._timer = loop.call_later(self.debounce_ms / 1000, self.flush)

    def flush(self) -> str:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self.pending:
            self.accumulated.extend(self.pending)
            self.pending = []
            self.text = rebuild_text(self.accumulated)
            if self.on_flush is not None:
                self.on_flush(self.text)
        return self.text

    def take(self) -> str:
        """Flush immediately, return the turn's text and start a new turn."""
        text = self.flush()
        self.reset()
        return text

    def reset(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self.pending = []
        self.accumulated = []
        self.text = ""
        self._seen.clear()

    def close(self) -> str:
        return self.flush()

    @property
    def has_content(self) -> bool:
        return bool(self.pending or self.accumulated)


__all__ = ["DeltaBuffer", "Fragment", "rebuild_text"]
