import math
import queue
import threading

import numpy as np

from common.config import EVENT_RATE
from common.log import log
from common.wire import INT32_MAX, INT32_MIN, Operation, Request

OPERATIONS = list(Operation)


def check_event_rate(event_rate: float) -> float:
    if isinstance(event_rate, bool) or not isinstance(event_rate, (int, float)):
        raise ValueError(f"event rate must be a number, got {event_rate!r}")
    if not math.isfinite(event_rate) or event_rate <= 0:
        raise ValueError(f"event rate must be finite and > 0, got {event_rate!r}")
    return float(event_rate)


def poisson_wait(event_rate: float, rng: np.random.Generator) -> float:
    """Seconds until the next request; Poisson with mean 60 / event_rate."""
    return float(rng.poisson(60.0 / check_event_rate(event_rate)))


def generate_request(rng: np.random.Generator) -> Request:
    operation = OPERATIONS[int(rng.integers(len(OPERATIONS)))]
    # integers() excludes the upper bound
    arg1, arg2 = (int(v) for v in rng.integers(INT32_MIN, INT32_MAX + 1, size=2))
    return Request(operation, arg1, arg2)


class RequestGenerator(threading.Thread):
    def __init__(self, node_id, channel: queue.Queue, stop_event: threading.Event,
                 event_rate=EVENT_RATE, seed=None):
        super().__init__(name=f"generator-{node_id}", daemon=True)
        self.node_id = node_id
        self.channel = channel
        self.stop_event = stop_event
        self.event_rate = check_event_rate(event_rate)
        self.rng = np.random.default_rng(seed)
        self.generated = 0

    def run(self):
        log("peer", self.node_id, "GENERATOR_START", rate_per_min=self.event_rate)

        while not self.stop_event.is_set():
            wait = poisson_wait(self.event_rate, self.rng)
            if self.stop_event.wait(wait):
                break

            request = generate_request(self.rng)
            self.channel.put(request)
            self.generated += 1

        log("peer", self.node_id, "GENERATOR_STOP", generated=self.generated)
