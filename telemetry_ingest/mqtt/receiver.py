"""MQTT receiver.

paho-mqtt client subscribed to ``{prefix}/+/{metric}`` for every metric
kind. ``on_message`` wraps the raw message in an InboundMessage and hands
it to the keyed processor; it never touches state itself.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional

import paho.mqtt.client as mqtt

from common.config import MQTTSettings

from ..domain.models import InboundMessage
from ..metrics import RECEIVER_CONNECTED
from .topics import subscription_topics

logger = logging.getLogger(__name__)

CONNECT_WAIT_SECONDS = 5.0


class TelemetryReceiver:

    def __init__(
        self,
        settings: MQTTSettings,
        enqueue: Callable[[InboundMessage], bool],
    ):
        self._settings = settings
        self._enqueue = enqueue
        self.client_id = f"{settings.client_id}-{int(time.time())}"

        self._client: Optional[mqtt.Client] = None
        self._running = False
        self._connected = False
        self._ever_connected = False

        self._received = 0
        self._rejected = 0
        self._reconnects = 0
        self._last_message_at: float = 0

    def start(self) -> bool:
        """Connect and start the network loop. False if the broker is unreachable."""
        s = self._settings
        try:
            self._client = mqtt.Client(
                callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
                client_id=self.client_id,
                protocol=mqtt.MQTTv311,
            )
            self._client.on_connect = self._on_connect
            self._client.on_disconnect = self._on_disconnect
            self._client.on_message = self._on_message
            self._client.reconnect_delay_set(min_delay=1, max_delay=30)

            if s.username and s.password:
                self._client.username_pw_set(s.username, s.password)

            logger.info("[MQTT] Connecting to %s:%d", s.broker_host, s.broker_port)
            self._client.connect(s.broker_host, s.broker_port, keepalive=s.keepalive)
            self._client.loop_start()
            self._running = True

            deadline = time.monotonic() + CONNECT_WAIT_SECONDS
            while not self._connected and time.monotonic() < deadline:
                time.sleep(0.1)

            if self._connected:
                logger.info("[MQTT] Started successfully")
                return True
            logger.error("[MQTT] Connection timeout")
            return False

        except Exception as e:
            logger.exception("[MQTT] Start failed: %s", e)
            return False

    def stop(self) -> None:
        self._running = False
        if self._client is not None:
            try:
                self._client.disconnect()
                self._client.loop_stop()
            except Exception as e:
                logger.warning("[MQTT] Error stopping: %s", e)
        self._connected = False
        RECEIVER_CONNECTED.set(0)
        logger.info("[MQTT] Stopped. received=%d rejected=%d", self._received, self._rejected)

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        if reason_code.is_failure:
            self._connected = False
            logger.error("[MQTT] Connection failed: %s", reason_code)
            return

        if self._ever_connected:
            self._reconnects += 1
        self._ever_connected = True
        self._connected = True
        RECEIVER_CONNECTED.set(1)
        logger.info("[MQTT] Connected to broker")

        # Subscriptions are not persisted across reconnects with a clean session.
        topics = subscription_topics(self._settings.topic_prefix)
        client.subscribe([(topic, self._settings.qos) for topic in topics])
        logger.info("[MQTT] Subscribed to %s qos=%d", topics, self._settings.qos)

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties=None):
        self._connected = False
        RECEIVER_CONNECTED.set(0)
        if self._running:
            logger.warning("[MQTT] Disconnected (%s), paho will reconnect", reason_code)

    def _on_message(self, client, userdata, msg):
        self._received += 1
        self._last_message_at = time.time()
        message = InboundMessage(topic=msg.topic, payload=bytes(msg.payload))
        if not self._enqueue(message):
            self._rejected += 1

    @property
    def stats(self) -> dict:
        s = self._settings
        return {
            "running": self._running,
            "connected": self._connected,
            "broker": f"{s.broker_host}:{s.broker_port}",
            "client_id": self.client_id,
            "qos": s.qos,
            "messages_received": self._received,
            "messages_rejected": self._rejected,
            "reconnects": self._reconnects,
            "last_message_at": self._last_message_at,
        }

    def health_check(self) -> dict:
        return {
            "healthy": self._running and self._connected,
            "running": self._running,
            "connected": self._connected,
            "messages_received": self._received,
        }
