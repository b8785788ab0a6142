"""Minimal push-based signal graph for mixing live audio blocks.

Sources push int16 blocks through gain nodes into destinations. The mixed
destination is clocked by its first input: every block from that input pulls
the same number of samples from the other inputs' buffers, so the mix keeps
the cadence of the remote stream even when the microphone runs slightly
faster or slower.
"""

from __future__ import annotations

import threading
from collections import deque
from typing import Callable, Deque, List, Optional

import numpy as np

INT16_MIN = -32768
INT16_MAX = 32767

BlockSink = Callable[[np.ndarray], None]


class SampleBuffer:
    """Thread-safe FIFO of samples with a hard size cap (oldest dropped)."""

    def __init__(self, max_samples: int) -> None:
        self._max_samples = max(1, int(max_samples))
        self._chunks: Deque[np.ndarray] = deque()
        self._size = 0
        self._lock = threading.Lock()

    def append(self, block: np.ndarray) -> None:
        with self._lock:
            self._chunks.append(block)
            self._size += len(block)
            while self._size > self._max_samples and self._chunks:
                overflow = self._size - self._max_samples
                head = self._chunks[0]
                if len(head) <= overflow:
                    self._chunks.popleft()
                    self._size -= len(head)
                else:
                    self._chunks[0] = head[overflow:]
                    self._size -= overflow

    def pull(self, count: int) -> np.ndarray:
        """Return exactly ``count`` samples, zero-padded when short."""
        out = np.zeros(count, dtype=np.float32)
        filled = 0
        with self._lock:
            while filled < count and self._chunks:
                head = self._chunks[0]
                take = min(count - filled, len(head))
                out[filled : filled + take] = head[:take]
                filled += take
                if take == len(head):
                    self._chunks.popleft()
                else:
                    self._chunks[0] = head[take:]
                self._size -= take
        return out

    def clear(self) -> None:
        with self._lock:
            self._chunks.clear()
            self._size = 0

    def __len__(self) -> int:
        with self._lock:
            return self._size


class Node:
    def __init__(self, name: str = "") -> None:
        self.name = name
        self._outputs: List["Node"] = []

    def _connect(self, node: "Node") -> None:
        if node not in self._outputs:
            self._outputs.append(node)
            node._attach(self)

    def _attach(self, upstream: "Node") -> None:
        return None

    def disconnect(self) -> None:
        self._outputs.clear()

    def _push(self, block: np.ndarray) -> None:
        for node in list(self._outputs):
            node.receive(block, self)

    def receive(self, block: np.ndarray, sender: "Node") -> None:
        self._push(block)


class SourceNode(Node):
    """Entry point for blocks delivered by a device callback."""

    def feed(self, block: np.ndarray) -> None:
        if block.size:
            self._push(block.astype(np.float32, copy=False))


class GainNode(Node):
    def __init__(self, gain: float = 1.0, name: str = "") -> None:
        super().__init__(name)
        self.gain = float(gain)

    def receive(self, block: np.ndarray, sender: Node) -> None:
        self._push(block * self.gain)


class MixedDestination(Node):
    """Sums every connected input into one int16 signal."""

    def __init__(self, max_lag_samples: int, name: str = "mix") -> None:
        super().__init__(name)
        self._max_lag = max_lag_samples
        self._clock: Optional[Node] = None
        self._buffers: dict[int, SampleBuffer] = {}
        self._subscribers: List[BlockSink] = []
        self._lock = threading.Lock()

    def _attach(self, upstream: Node) -> None:
        with self._lock:
            if self._clock is None:
                self._clock = upstream
            else:
                self._buffers[id(upstream)] = SampleBuffer(self._max_lag)

    def subscribe(self, sink: BlockSink) -> None:
        with self._lock:
            self._subscribers.append(sink)

    def unsubscribe(self, sink: BlockSink) -> None:
        with self._lock:
            if sink in self._subscribers:
                self._subscribers.remove(sink)

    @property
    def input_count(self) -> int:
        return (1 if self._clock is not None else 0) + len(self._buffers)

    def receive(self, block: np.ndarray, sender: Node) -> None:
        if sender is not self._clock:
            buffer = self._buffers.get(id(sender))
            if buffer is not None:
                buffer.append(block)
            return
        mixed = np.array(block, dtype=np.float32)
        for buffer in list(self._buffers.values()):
            mixed += buffer.pull(len(mixed))
        out = np.clip(np.rint(mixed), INT16_MIN, INT16_MAX).astype(np.int16)
        with self._lock:
            subscribers = list(self._subscribers)
        for sink in subscribers:
            sink(out)

    def disconnect(self) -> None:
        super().disconnect()
        with self._lock:
            self._subscribers.clear()
            for buffer in self._buffers.values():
                buffer.clear()
            self._buffers.clear()
            self._clock = None


class MonitorDestination(Node):
    """Buffers blocks for an output stream that pulls them on its own clock."""

    def __init__(self, max_lag_samples: int, name: str = "monitor") -> None:
        super().__init__(name)
        self._buffer = SampleBuffer(max_lag_samples)

    def receive(self, block: np.ndarray, sender: Node) -> None:
        self._buffer.append(block)

    def pull(self, frames: int) -> np.ndarray:
        data = self._buffer.pull(frames)
        return np.clip(np.rint(data), INT16_MIN, INT16_MAX).astype(np.int16)

    def disconnect(self) -> None:
        super().disconnect()
        self._buffer.clear()


class SignalGraph:
    """Owns every node it creates so a single ``close`` tears the graph down."""

    def __init__(self, sample_rate: int, max_lag_ms: int = 1000) -> None:
        self.sample_rate = sample_rate
        self._max_lag = max(1, int(sample_rate * max_lag_ms / 1000))
        self._nodes: List[Node] = []
        self.closed = False

    def _track(self, node: Node) -> Node:
        self._nodes.append(node)
        return node

    def create_source(self, name: str = "") -> SourceNode:
        return self._track(SourceNode(name))  # type: ignore[return-value]

    def create_gain(self, gain: float = 1.0, name: str = "") -> GainNode:
        return self._track(GainNode(gain, name))  # type: ignore[return-value]

    def create_mixed_destination(self) -> MixedDestination:
        return self._track(MixedDestination(self._max_lag))  # type: ignore[return-value]

    def create_monitor(self) -> MonitorDestination:
        return self._track(MonitorDestination(self._max_lag))  # type: ignore[return-value]

    def connect(self, upstream: Node, downstream: Node) -> None:
        if self.closed:
            raise RuntimeError("Signal graph is closed")
        upstream._connect(downstream)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        for node in self._nodes:
            node.disconnect()
        self._nodes.clear()


__all__ = [
    "GainNode",
    "MixedDestination",
    "MonitorDestination",
    "SampleBuffer",
    "SignalGraph",
    "SourceNode",
]
