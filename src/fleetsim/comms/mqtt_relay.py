"""MQTTRelay: relays the telemetry bridge to an MQTT broker.

The relay never touches simulation state.  Outbound traffic comes from the
EventBus on the relay's own thread; inbound commands and cancellation go
into the TelemetryBridge, which applies them at the next tick boundary.

MQTT Topic Hierarchy:
    fleetsim/{site}/telemetry                      -> full snapshot per published tick
    fleetsim/{site}/drones/{drone_id}/state        -> per-drone telemetry
    fleetsim/{site}/drones/{drone_id}/command      <- command from the platform
    fleetsim/{site}/drones/{drone_id}/command/ack  -> accepted / rejected result
    fleetsim/{site}/control/cancel                 <- cooperative cancellation
    fleetsim/{site}/result                         -> terminal scenario result
"""

from __future__ import annotations

import json
import queue
import threading
import time
from typing import TYPE_CHECKING

import paho.mqtt.client as mqtt
from loguru import logger
from pydantic import ValidationError

if TYPE_CHECKING:
    from fleetsim.simulation.bridge import TelemetryBridge


class MQTTRelay:
    def __init__(
        self,
        bridge: TelemetryBridge,
        site_id: str = "default",
        broker_host: str = "localhost",
        broker_port: int = 1883,
        username: str = "",
        password: str = "",
    ) -> None:
        self._bridge = bridge
        self._site = site_id
        self._prefix = f"fleetsim/{site_id}"
        self._broker_host = broker_host
        self._broker_port = broker_port
        self._username = username
        self._password = password
        self._client: mqtt.Client | None = None
        self._connected = False
        self._running = False
        self._events: queue.Queue | None = None
        self._thread: threading.Thread | None = None
        # Stats
        self._messages_received: int = 0
        self._messages_published: int = 0
        self._last_error: str = ""

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def stats(self) -> dict:
        return {
            "connected": self._connected,
            "broker": f"{self._broker_host}:{self._broker_port}",
            "site_id": self._site,
            "messages_received": self._messages_received,
            "messages_published": self._messages_published,
            "last_error": self._last_error,
        }

    def start(self) -> None:
        """Connect to the broker and start relaying."""
        if self._running:
            return
        self._running = True
        client_id = f"fleetsim-{self._site}-{int(time.time()) % 10000}"
        self._client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=client_id)
        if self._username:
            self._client.username_pw_set(self._username, self._password)
        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect
        self._client.on_message = self._on_message

        try:
            self._client.connect(self._broker_host, self._broker_port, keepalive=60)
            self._client.loop_start()
            logger.info(f"MQTT relay connecting to {self._broker_host}:{self._broker_port}")
        except OSError as e:
            logger.error(f"MQTT connection failed: {e}")
            self._last_error = str(e)
            self._client = None
            self._running = False
            return

        self._events = self._bridge.event_bus.subscribe()
        self._thread = threading.Thread(
            target=self._forward_loop, args=(self._events,), name="mqtt-relay", daemon=True,
        )
        self._thread.start()

    def stop(self) -> None:
        """Flush pending events, then disconnect."""
        self._running = False
        if self._thread is not None:
            self._thread.join(timeout=2.0)
            self._thread = None
        if self._events is not None:
            self._bridge.event_bus.unsubscribe(self._events)
            self._events = None
        if self._client is not None:
            self._client.loop_stop()
            self._client.disconnect()
            self._client = None
        self._connected = False
        logger.info("MQTT relay stopped")

    # --- Connection callbacks ---

    def _on_connect(self, client, userdata, flags, reason_code, properties=None) -> None:
        if reason_code == 0:
            self._connected = True
            logger.info(f"MQTT connected to {self._broker_host}:{self._broker_port}")
            client.subscribe([
                (f"{self._prefix}/drones/+/command", 1),
                (f"{self._prefix}/control/cancel", 1),
            ])
        else:
            self._connected = False
            self._last_error = f"Connection refused ({reason_code})"
            logger.error(f"MQTT connection refused: {reason_code}")

    def _on_disconnect(self, client, userdata, flags, reason_code, properties=None) -> None:
        self._connected = False
        if reason_code != 0:
            logger.warning(f"MQTT unexpected disconnect ({reason_code})")
            self._last_error = f"Unexpected disconnect ({reason_code})"

    # --- Inbound ---

    def _on_message(self, client, userdata, msg) -> None:
        """Route incoming commands and cancellation into the bridge."""
        self._messages_received += 1
        topic = msg.topic
        if topic == f"{self._prefix}/control/cancel":
            self._bridge.request_cancel()
            return

        # fleetsim/{site}/drones/{drone_id}/command
        parts = topic.split("/")
        if len(parts) != 5 or parts[2] != "drones" or parts[4] != "command":
            return
        drone_id = parts[3]
        try:
            payload = json.loads(msg.payload.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.debug(f"MQTT bad payload on {topic}: {e}")
            return
        if not isinstance(payload, dict):
            logger.debug(f"MQTT command on {topic} is not an object")
            return
        payload["drone_id"] = drone_id
        try:
            command_id = self._bridge.submit_command(payload)
        except ValidationError as e:
            self._publish_ack(drone_id, {
                "command_id": payload.get("command_id"), "status": "rejected",
                "reason": f"invalid command: {e.error_count()} error(s)",
            })
        except queue.Full:
            self._publish_ack(drone_id, {
                "command_id": payload.get("command_id"), "status": "rejected",
                "reason": "command queue full",
            })
        else:
            logger.debug(f"MQTT command {command_id} queued for {drone_id}")

    # --- Outbound ---

    def _forward_loop(self, events: queue.Queue) -> None:
        # Holds its own reference: stop() may drop the subscription while this drains.
        while self._running or not events.empty():
            try:
                event = events.get(timeout=0.2)
            except queue.Empty:
                continue
            self.forward(event)

    def forward(self, event: dict) -> None:
        """Publish one EventBus message to its MQTT topic(s)."""
        kind = event.get("type")
        data = event.get("data") or {}
        if kind == "sim_telemetry":
            self._publish(f"{self._prefix}/telemetry", data, qos=0)
            for drone in data.get("drones", []):
                self._publish(f"{self._prefix}/drones/{drone['id']}/state", drone, qos=0)
        elif kind == "command_result":
            if data.get("status") != "queued":
                self._publish_ack(data["drone_id"], data)
        elif kind == "sim_result":
            self._publish(f"{self._prefix}/result", data, qos=1, retain=True)

    def _publish_ack(self, drone_id: str, data: dict) -> None:
        self._publish(f"{self._prefix}/drones/{drone_id}/command/ack", data, qos=1)

    def _publish(self, topic: str, data: dict, qos: int = 0, retain: bool = False) -> None:
        client = self._client
        if client is None:
            return
        client.publish(topic, json.dumps(data), qos=qos, retain=retain)
        self._messages_published += 1
