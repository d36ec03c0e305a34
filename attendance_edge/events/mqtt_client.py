"""
MQTT publisher for node and camera health.

Camera connection transitions go to ``attendance/<node_id>/health/cameras``
and periodic heartbeats to ``attendance/<node_id>/health``. Health is
best-effort: when the broker is unreachable messages are dropped with a
warning, attendance delivery does not depend on MQTT.
"""

from __future__ import annotations

import logging
import threading
from typing import Optional

import paho.mqtt.client as mqtt

from ..config import MqttConfig
from ..core.errors import log_exception
from ..models.event import CameraHealthEvent, HealthHeartbeat


class HealthPublisher:
    """
    A wrapper around paho-mqtt for health messages.

    Parameters
    ----------
    config: MqttConfig
        Broker connection parameters.
    node_id: str
        Used in topic names.
    client: Optional[mqtt.Client]
        Pre-built client (tests); a v2-callback client is created otherwise.
    """

    def __init__(self, config: MqttConfig, node_id: str, client: Optional[mqtt.Client] = None) -> None:
        self.logger = logging.getLogger(self.__class__.__name__)
        self.config = config
        self.node_id = node_id
        self.client = client or mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=f"attendance-edge-{node_id}",
        )
        if config.username:
            self.client.username_pw_set(config.username, config.password)
        self.client.on_connect = self.on_connect
        self.client.on_disconnect = self.on_disconnect
        self._connected = threading.Event()
        self._stop_flag = threading.Event()
        self._reconnect_thread: Optional[threading.Thread] = None

    @property
    def camera_topic(self) -> str:
        return f"attendance/{self.node_id}/health/cameras"

    @property
    def heartbeat_topic(self) -> str:
        return f"attendance/{self.node_id}/health"

    def on_connect(self, client, userdata, flags, reason_code, properties=None) -> None:  # type: ignore[no-untyped-def]
        if not reason_code.is_failure:
            self.logger.info("Connected to MQTT broker %s:%s", self.config.host, self.config.port)
            self._connected.set()
        else:
            self.logger.error("Failed to connect to MQTT broker: %s", reason_code)

    def on_disconnect(self, client, userdata, flags, reason_code, properties=None) -> None:  # type: ignore[no-untyped-def]
        self._connected.clear()
        if self._stop_flag.is_set():
            return
        self.logger.warning("MQTT disconnected: %s", reason_code)
        if self._reconnect_thread is None or not self._reconnect_thread.is_alive():
            self._reconnect_thread = threading.Thread(target=self._reconnect, name="MqttReconnect", daemon=True)
            self._reconnect_thread.start()

    def _reconnect(self) -> None:
        delay = 1.0
        while not self._stop_flag.is_set() and not self._connected.is_set():
            try:
                self.logger.info("Attempting to reconnect to MQTT broker")
                self.client.reconnect()
                return
            except Exception as exc:
                self.logger.error("MQTT reconnection failed: %s", exc)
            self._stop_flag.wait(timeout=delay)
            delay = min(30.0, delay * 2)

    def connect(self, timeout: float = 10.0) -> None:
        """Connect and start the network loop. A broker outage is logged, not raised."""
        try:
            self.client.connect(self.config.host, self.config.port, keepalive=60)
        except OSError as exc:
            self.logger.warning("MQTT broker %s:%s unreachable: %s", self.config.host, self.config.port, exc)
            self.client.loop_start()
            self.on_disconnect(self.client, None, None, exc)
            return
        self.client.loop_start()
        if not self._connected.wait(timeout=timeout):
            self.logger.warning("MQTT connection timeout; continuing anyway")

    def is_connected(self) -> bool:
        return self._connected.is_set()

    def _publish(self, topic: str, payload: str, *, retain: bool = False) -> bool:
        if not self.is_connected():
            self.logger.debug("MQTT not connected; dropping message for %s", topic)
            return False
        try:
            result = self.client.publish(topic, payload, qos=1, retain=retain)
        except Exception as exc:
            self.logger.warning("MQTT publish exception topic=%s error=%s", topic, exc)
            return False
        if result.rc != mqtt.MQTT_ERR_SUCCESS:
            self.logger.warning("MQTT publish failed rc=%s topic=%s", mqtt.error_string(result.rc), topic)
            return False
        return True

    def publish_camera_health(self, event: CameraHealthEvent) -> bool:
        return self._publish(self.camera_topic, event.model_dump_json())

    def publish_heartbeat(self, heartbeat: HealthHeartbeat) -> bool:
        return self._publish(self.heartbeat_topic, heartbeat.model_dump_json(), retain=True)

    def stop(self) -> None:
        self._stop_flag.set()
        self.client.loop_stop()
        try:
            self.client.disconnect()
        except Exception as exc:
            log_exception(self.logger, "MQTT disconnect failed", exc=exc)


__all__ = ["HealthPublisher"]
