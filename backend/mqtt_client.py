"""MQTT Client for the convocation RFID tracker.

Receives tag reads from fixed station readers via MQTT protocol.
"""

import asyncio
import json
import logging
import ssl
from typing import Any, Optional

import certifi
import paho.mqtt.client as mqtt

from config import get_config
from services.station_reader import StationReader

logger = logging.getLogger(__name__)


class MqttClient:
    """MQTT client for station reader ingest."""

    def __init__(self) -> None:
        """Initialize MQTT client."""
        self._client: Optional[mqtt.Client] = None
        self._connected = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._reader: Optional[StationReader] = None

    @property
    def is_connected(self) -> bool:
        """Check if client is connected to broker."""
        return self._connected

    def _on_connect(
        self,
        client: mqtt.Client,
        userdata: Any,
        flags: mqtt.ConnectFlags,
        reason_code: mqtt.ReasonCode,
        properties: Optional[mqtt.Properties] = None,
    ) -> None:
        """Handle MQTT connection established."""
        if reason_code.value == 0:
            self._connected = True
            logger.info("MQTT connected to broker")

            topic_tag = get_config().reader.topic_tag_stream
            logger.debug(f"[SUB] Subscribing to tag stream: topic={topic_tag}, qos=1")
            client.subscribe(topic_tag, qos=1)
            logger.info(f"[SUB] Subscribed to: {topic_tag}")
        else:
            logger.error(f"MQTT connection failed: {reason_code}")

    def _on_disconnect(
        self,
        client: mqtt.Client,
        userdata: Any,
        disconnect_flags: mqtt.DisconnectFlags,
        reason_code: mqtt.ReasonCode,
        properties: Optional[mqtt.Properties] = None,
    ) -> None:
        """Handle MQTT disconnection."""
        self._connected = False
        logger.warning(f"MQTT disconnected: {reason_code} (value={reason_code.value})")

    def _on_subscribe(
        self,
        client: mqtt.Client,
        userdata: Any,
        mid: int,
        reason_code_list: list[mqtt.ReasonCode],
        properties: Optional[mqtt.Properties] = None,
    ) -> None:
        """Handle MQTT subscription confirmation."""
        for rc in reason_code_list:
            if rc.is_failure:
                logger.error(f"[SUB] Subscription FAILED: mid={mid}, reason={rc}")
            else:
                logger.info(f"[SUB] Subscription CONFIRMED: mid={mid}, granted_qos={rc.value}")

    def _on_message(
        self,
        client: mqtt.Client,
        userdata: Any,
        message: mqtt.MQTTMessage,
    ) -> None:
        """Handle incoming MQTT message on the paho network thread."""
        logger.debug(f"[MSG-IN] Received: topic={message.topic}, size={len(message.payload)} bytes")
        try:
            payload = json.loads(message.payload.decode("utf-8"))

            if "stream/tag" in message.topic and self._loop and self._reader:
                asyncio.run_coroutine_threadsafe(
                    self._reader.handle_message(message.topic, payload),
                    self._loop,
                )
        except json.JSONDecodeError as e:
            logger.error(f"Invalid JSON in MQTT message: {e}")
        except Exception as e:
            logger.error(f"Error handling MQTT message: {e}", exc_info=True)

    def connect(self, loop: asyncio.AbstractEventLoop, reader: StationReader) -> None:
        """Connect to MQTT broker.

        Args:
            loop: Asyncio event loop for coroutine scheduling.
            reader: Receives the tag stream messages.
        """
        config = get_config()
        self._loop = loop
        self._reader = reader

        self._client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            protocol=mqtt.MQTTv5,
        )
        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect
        self._client.on_message = self._on_message
        self._client.on_subscribe = self._on_subscribe

        if config.mqtt.username:
            self._client.username_pw_set(config.mqtt.username, config.mqtt.password)

        if config.mqtt.use_tls:
            self._client.tls_set(ca_certs=certifi.where(), tls_version=ssl.PROTOCOL_TLS_CLIENT)
            logger.info("TLS enabled for MQTT connection")

        logger.info(f"Connecting to MQTT broker at {config.mqtt.host}:{config.mqtt.port}")

        try:
            self._client.connect_async(config.mqtt.host, config.mqtt.port)
            self._client.loop_start()
        except Exception as e:
            logger.error(f"Failed to connect to MQTT broker: {e}")

    def disconnect(self) -> None:
        """Disconnect from MQTT broker."""
        if self._client:
            self._client.loop_stop()
            self._client.disconnect()
            self._connected = False
            logger.info("MQTT client disconnected")


# Global MQTT client instance
_mqtt_client: Optional[MqttClient] = None


def get_mqtt_client() -> MqttClient:
    """Get MQTT client instance (singleton)."""
    global _mqtt_client
    if _mqtt_client is None:
        _mqtt_client = MqttClient()
    return _mqtt_client
