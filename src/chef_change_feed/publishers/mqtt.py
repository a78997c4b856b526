"""MQTT publisher for outbox messages."""

from __future__ import annotations

import json
import logging
from typing import Callable, Optional

import paho.mqtt.client as mqtt

from .outbox import OutboxMessage, PublishError

logger = logging.getLogger(__name__)

_TOPIC_RESERVED = str.maketrans({"/": "_", "+": "_", "#": "_"})


class MqttPublisher:
    """Publishes outbox messages at QoS 1 to ``<topic_prefix>/<key>``."""

    def __init__(
        self,
        *,
        host: str,
        port: int = 1883,
        topic_prefix: str = "chef/events",
        client_id: str = "chef-change-feed",
        username: str = "",
        password: str = "",
        tls: bool = False,
        tls_insecure: bool = False,
        qos: int = 1,
        publish_timeout_seconds: float = 10.0,
        client_factory: Optional[Callable[[], mqtt.Client]] = None,
    ) -> None:
        self._host = host
        self._port = port
        self._topic_prefix = topic_prefix.rstrip("/")
        self._client_id = client_id
        self._username = username
        self._password = password
        self._tls = tls
        self._tls_insecure = tls_insecure
        self._qos = qos
        self._publish_timeout = publish_timeout_seconds
        self.client = (client_factory or self._build_client)()

    def _build_client(self) -> mqtt.Client:
        client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=self._client_id,
            protocol=mqtt.MQTTv311,
        )
        if self._username or self._password:
            client.username_pw_set(self._username, self._password)
        if self._tls:
            client.tls_set_context()
            client.tls_insecure_set(self._tls_insecure)
        client.on_connect = self.on_connect
        client.on_disconnect = self.on_disconnect
        return client

    def connect(self) -> None:
        """Connect and start the background network loop."""
        if not self._host:
            raise RuntimeError(
                "MQTT broker host is not configured. Set MQTT_HOST or update the settings."
            )
        self.client.connect(self._host, self._port, keepalive=60)
        self.client.loop_start()

    def close(self) -> None:
        try:
            self.client.disconnect()
        finally:
            self.client.loop_stop()

    def topic_for(self, key: str) -> str:
        return f"{self._topic_prefix}/{key.translate(_TOPIC_RESERVED)}"

    def publish(self, message: OutboxMessage) -> None:
        topic = self.topic_for(message.key)
        envelope = json.dumps(
            {
                "deduplication_id": message.deduplication_id,
                "key": message.key,
                "message": message.body,
            }
        )
        info = self.client.publish(topic, payload=envelope, qos=self._qos)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise PublishError(
                f"failed to publish {message.deduplication_id} to {topic} (rc={info.rc})"
            )
        try:
            info.wait_for_publish(timeout=self._publish_timeout)
        except (RuntimeError, ValueError) as exc:
            raise PublishError(
                f"failed to publish {message.deduplication_id} to {topic}"
            ) from exc
        if not info.is_published():
            raise PublishError(
                f"publish of {message.deduplication_id} to {topic} timed out"
            )

    # MQTT callbacks -----------------------------------------------------
    def on_connect(
        self, client: mqtt.Client, userdata, flags, reason_code, properties=None
    ) -> None:
        rc = getattr(reason_code, "value", reason_code)
        if rc == 0:
            logger.info("connected to MQTT broker %s:%s", self._host, self._port)
        else:
            logger.error("MQTT connect failed - rc: %s (%s)", rc, reason_code)

    def on_disconnect(
        self,
        client: mqtt.Client,
        userdata,
        disconnect_flags,
        reason_code,
        properties=None,
    ) -> None:
        rc = getattr(reason_code, "value", reason_code)
        logger.info("disconnected from MQTT broker: rc=%s (%s)", rc, reason_code)


__all__ = ["MqttPublisher"]
