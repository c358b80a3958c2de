"""Communication model: RF link evaluation and per-link message delivery.

Link model
----------
For endpoints ``d`` metres apart:

    excess      = 20 * log10(max(d, d_ref) / d_ref) * multiplier
    attenuation = reference_loss + excess
    multiplier  = 1 + precipitation_factor * severity + interference_factor * level

Loss probability rises with the excess path loss relative to the clear-air
budget at ``max_range``:

    p = floor + (1 - floor) * clip(excess / budget, 0, 1) ** k

so it equals the environment noise floor at distance 0, is non-decreasing in
distance for a fixed environment, and is 1 beyond ``max_range`` (or when an
endpoint's radio has failed).

Delivery
--------
Each attempt is an independent Bernoulli trial drawn from a generator seeded
with ``(scenario seed, message seq, crc32(receiver))``; outcomes never depend
on thread scheduling.  Delay is ``base_latency + d / c + jitter`` with jitter
uniform in ``[0, jitter_max]``.  Under the default ``fifo`` policy a delivery
is never scheduled before the previous one on the same directed link, so
jitter stretches delays but cannot reorder.  ``reorder`` lifts that clamp.

Lost messages are recorded as ``packet_lost`` metric events and are silent to
the recipient.
"""

from __future__ import annotations

import heapq
import itertools
import math
import threading
import zlib
from concurrent.futures import Executor
from dataclasses import dataclass
from typing import Any, Sequence

import numpy as np

from fleetsim.errors import ResourceExhaustion

from .environment import Environment
from .metrics import MetricEvent, MetricsAggregator
from .models import Vec3

BRIDGE_ENDPOINT = "bridge"
SPEED_OF_LIGHT_MPS = 299_792_458.0

ORDERING_POLICIES = ("fifo", "reorder")


@dataclass(frozen=True)
class RadioConfig:
    max_range_m: float = 2000.0
    reference_distance_m: float = 1.0
    reference_loss_db: float = 40.0
    loss_exponent: float = 2.0
    precipitation_factor: float = 0.02  # multiplier increase per unit severity
    interference_factor: float = 1.0  # multiplier increase per unit interference
    base_latency_s: float = 0.005
    propagation_speed_mps: float = SPEED_OF_LIGHT_MPS
    jitter_max_s: float = 0.01
    ordering: str = "fifo"
    quality_alpha: float = 0.1  # EWMA weight of the newest delivery outcome
    heartbeat_interval_s: float = 1.0

    @property
    def loss_budget_db(self) -> float:
        return 20.0 * math.log10(self.max_range_m / self.reference_distance_m)


@dataclass(frozen=True)
class Endpoint:
    """A radio participant at its post-physics position."""

    name: str
    position: Vec3
    radio_ok: bool = True


@dataclass(frozen=True)
class LinkState:
    """One unordered link as evaluated for the current tick."""

    a: str
    b: str
    distance_m: float
    attenuation_db: float
    latency_s: float
    loss_probability: float
    quality: float


@dataclass(frozen=True)
class RadioMessage:
    seq: int
    sender: str
    receiver: str
    kind: str
    payload: Any
    sent_at: float


@dataclass(frozen=True)
class ScheduledDelivery:
    deliver_at: float
    message: RadioMessage


def link_key(a: str, b: str) -> tuple[str, str]:
    return (a, b) if a <= b else (b, a)


class RadioModel:
    """Evaluates links each tick and schedules message deliveries."""

    def __init__(
        self,
        config: RadioConfig | None = None,
        seed: int = 0,
        metrics: MetricsAggregator | None = None,
        executor: Executor | None = None,
        max_links: int = 325,
    ) -> None:
        self.config = config or RadioConfig()
        if self.config.ordering not in ORDERING_POLICIES:
            raise ValueError(f"Unknown ordering policy: {self.config.ordering}")
        if self.config.max_range_m <= self.config.reference_distance_m:
            raise ValueError("max_range_m must exceed reference_distance_m")
        self.seed = seed
        self._metrics = metrics
        self._executor = executor
        self._max_links = max_links
        self._lock = threading.Lock()
        self._seq = itertools.count()
        self._endpoints: dict[str, Endpoint] = {}
        self._links: dict[tuple[str, str], LinkState] = {}
        self._quality: dict[tuple[str, str], float] = {}
        self._last_delivery: dict[tuple[str, str], float] = {}
        self._pending: list[tuple[float, int, ScheduledDelivery]] = []
        self._inboxes: dict[str, list[RadioMessage]] = {}

    # -- link evaluation ----------------------------------------------------

    def loss_probability(self, distance_m: float, environment: Environment,
                         interference: float = 0.0, radio_ok: bool = True) -> float:
        if not radio_ok or distance_m > self.config.max_range_m:
            return 1.0
        excess = self._excess_db(distance_m, environment, interference)
        floor = environment.radio_noise_floor
        ratio = min(1.0, max(0.0, excess / self.config.loss_budget_db))
        return floor + (1.0 - floor) * ratio ** self.config.loss_exponent

    def attenuation_db(self, distance_m: float, environment: Environment,
                       interference: float = 0.0) -> float:
        return self.config.reference_loss_db + self._excess_db(distance_m, environment, interference)

    def _excess_db(self, distance_m: float, environment: Environment, interference: float) -> float:
        cfg = self.config
        d = max(distance_m, cfg.reference_distance_m)
        multiplier = (1.0
                      + cfg.precipitation_factor * environment.precipitation.severity
                      + cfg.interference_factor * interference)
        return 20.0 * math.log10(d / cfg.reference_distance_m) * multiplier

    def _evaluate(self, pair: tuple[Endpoint, Endpoint], environment: Environment) -> LinkState:
        a, b = pair
        distance = math.dist(a.position, b.position)
        interference = environment.interference_level(a.position, b.position)
        key = link_key(a.name, b.name)
        return LinkState(
            a=key[0],
            b=key[1],
            distance_m=distance,
            attenuation_db=self.attenuation_db(distance, environment, interference),
            latency_s=self.config.base_latency_s + distance / self.config.propagation_speed_mps,
            loss_probability=self.loss_probability(
                distance, environment, interference, a.radio_ok and b.radio_ok,
            ),
            quality=self._quality.get(key, 1.0),
        )

    def update_links(self, endpoints: Sequence[Endpoint], environment: Environment) -> list[LinkState]:
        """Recompute every link from post-physics endpoint positions."""
        pairs = list(itertools.combinations(endpoints, 2))
        if len(pairs) > self._max_links:
            raise ResourceExhaustion(
                f"{len(pairs)} radio links exceed the limit of {self._max_links}"
            )
        if self._executor is not None and len(pairs) > 1:
            states = list(self._executor.map(lambda p: self._evaluate(p, environment), pairs))
        else:
            states = [self._evaluate(p, environment) for p in pairs]
        with self._lock:
            self._endpoints = {e.name: e for e in endpoints}
            self._links = {(s.a, s.b): s for s in states}
        return states

    def links(self) -> list[LinkState]:
        with self._lock:
            return list(self._links.values())

    def link(self, a: str, b: str) -> LinkState | None:
        with self._lock:
            return self._links.get(link_key(a, b))

    def link_quality(self, a: str, b: str) -> float:
        """Rolling delivery success ratio on a link (1.0 before any traffic)."""
        with self._lock:
            return self._quality.get(link_key(a, b), 1.0)

    # -- delivery -----------------------------------------------------------

    def send_message(
        self,
        sender: str,
        receiver: str | None,
        payload: Any,
        send_time: float,
        kind: str = "data",
    ) -> list[ScheduledDelivery]:
        """Attempt delivery to one receiver, or broadcast when ``receiver`` is None."""
        with self._lock:
            if sender not in self._endpoints:
                raise ValueError(f"Unknown radio endpoint: {sender}")
            if receiver is None:
                receivers = [name for name in self._endpoints if name != sender]
            elif receiver not in self._endpoints:
                raise ValueError(f"Unknown radio endpoint: {receiver}")
            else:
                receivers = [receiver]

            scheduled = []
            for target in receivers:
                delivery = self._attempt(sender, target, payload, send_time, kind)
                if delivery is not None:
                    scheduled.append(delivery)
            return scheduled

    def _attempt(self, sender: str, receiver: str, payload: Any,
                 send_time: float, kind: str) -> ScheduledDelivery | None:
        cfg = self.config
        seq = next(self._seq)
        key = link_key(sender, receiver)
        link = self._links[key]

        rng = np.random.default_rng([self.seed, seq, zlib.crc32(receiver.encode("utf-8"))])
        lost = bool(rng.random() < link.loss_probability)
        jitter = float(rng.uniform(0.0, cfg.jitter_max_s)) if cfg.jitter_max_s > 0.0 else 0.0

        previous = self._quality.get(key, 1.0)
        outcome = 0.0 if lost else 1.0
        self._quality[key] = (1.0 - cfg.quality_alpha) * previous + cfg.quality_alpha * outcome

        if self._metrics is not None:
            self._metrics.count("messages_sent")
        if lost:
            if self._metrics is not None:
                self._metrics.record(MetricEvent(
                    kind="packet_lost",
                    sim_time_s=send_time,
                    drone_id=sender if sender != BRIDGE_ENDPOINT else receiver,
                    data={"sender": sender, "receiver": receiver, "message_kind": kind,
                          "seq": seq, "distance_m": round(link.distance_m, 3)},
                ))
            return None

        deliver_at = send_time + link.latency_s + jitter
        if cfg.ordering == "fifo":
            directed = (sender, receiver)
            deliver_at = max(deliver_at, self._last_delivery.get(directed, deliver_at))
            self._last_delivery[directed] = deliver_at

        message = RadioMessage(seq, sender, receiver, kind, payload, send_time)
        delivery = ScheduledDelivery(deliver_at, message)
        heapq.heappush(self._pending, (deliver_at, seq, delivery))
        return delivery

    def deliver_due(self, now: float) -> list[RadioMessage]:
        """Move every delivery due by ``now`` into its receiver's inbox."""
        delivered = []
        with self._lock:
            while self._pending and self._pending[0][0] <= now:
                _, _, delivery = heapq.heappop(self._pending)
                message = delivery.message
                self._inboxes.setdefault(message.receiver, []).append(message)
                delivered.append(message)
        if delivered and self._metrics is not None:
            self._metrics.count("messages_delivered", len(delivered))
        return delivered

    def inbox(self, endpoint: str) -> list[RadioMessage]:
        """Return and clear the messages delivered to ``endpoint``."""
        with self._lock:
            return self._inboxes.pop(endpoint, [])

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)
