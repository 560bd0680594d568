#!/usr/bin/env python3
"""
Sentinel Dispatch - MQTT Command Bus

One long-lived aiomqtt connection shared by inbound telemetry and
outbound drone commands.

Features:
- Handlers are registered per topic filter before start()
- Background connection loop with exponential back-off reconnect (5s -> 60s)
- Inbound messages routed to every handler whose filter matches
- Best-effort JSON publish at QoS 1: returns False instead of raising
"""

import asyncio
import json
import logging
from typing import Awaitable, Callable, List, Optional, Tuple

import aiomqtt

from settings import Settings

logger = logging.getLogger(__name__)

MessageHandler = Callable[[str, bytes], Awaitable[None]]

RECONNECT_INTERVAL = 5  # seconds
MAX_RECONNECT_INTERVAL = 60  # seconds


class MqttBus:
    """Publish/subscribe client for the drone command bus"""

    def __init__(self, settings: Settings):
        self.settings = settings
        self._handlers: List[Tuple[str, MessageHandler]] = []
        self._client: Optional[aiomqtt.Client] = None
        self._task: Optional[asyncio.Task] = None
        self._stopping = asyncio.Event()
        self.stats = {
            'published': 0,
            'publish_failures': 0,
            'received': 0,
            'handler_errors': 0,
        }

    @property
    def connected(self) -> bool:
        return self._client is not None

    def subscribe(self, pattern: str, handler: MessageHandler):
        """Register an async handler(topic, payload) for a topic filter."""
        if (pattern, handler) not in self._handlers:
            self._handlers.append((pattern, handler))

    def _client_kwargs(self) -> dict:
        kwargs = {
            'hostname': self.settings.mqtt_host,
            'port': self.settings.mqtt_port,
            'identifier': self.settings.mqtt_client_id,
        }
        if self.settings.mqtt_username:
            kwargs['username'] = self.settings.mqtt_username
        if self.settings.mqtt_password:
            kwargs['password'] = self.settings.mqtt_password
        if self.settings.mqtt_use_tls:
            kwargs['tls_params'] = aiomqtt.TLSParameters()
        return kwargs

    async def start(self):
        """Spawn the background connection loop"""
        if self._task is not None:
            return
        logger.info(f"MQTT Broker: {self.settings.mqtt_host}:{self.settings.mqtt_port}")
        logger.info(f"TLS: {'enabled' if self.settings.mqtt_use_tls else 'disabled'}")
        self._stopping.clear()
        self._task = asyncio.create_task(self._run(), name="mqtt-bus")

    async def _run(self):
        """Connect, subscribe and route messages until close()"""
        reconnect_interval = RECONNECT_INTERVAL

        while not self._stopping.is_set():
            try:
                logger.info(
                    f"Connecting to MQTT broker at {self.settings.mqtt_host}:{self.settings.mqtt_port}..."
                )
                async with aiomqtt.Client(**self._client_kwargs()) as client:
                    self._client = client
                    logger.info("Connected to MQTT broker")
                    reconnect_interval = RECONNECT_INTERVAL

                    for pattern, _ in self._handlers:
                        await client.subscribe(pattern, qos=1)
                        logger.info(f"Subscribed to: {pattern}")

                    try:
                        async for message in client.messages:
                            if self._stopping.is_set():
                                break
                            await self._dispatch(message)
                    finally:
                        self._client = None

            except aiomqtt.MqttError as e:
                self._client = None
                if self._stopping.is_set():
                    break
                logger.error(f"MQTT error: {e}")
                logger.info(f"Reconnecting in {reconnect_interval} seconds...")
                await asyncio.sleep(reconnect_interval)
                reconnect_interval = min(reconnect_interval * 2, MAX_RECONNECT_INTERVAL)

            except Exception as e:
                self._client = None
                if self._stopping.is_set():
                    break
                logger.error(f"Unexpected MQTT bus error: {e}", exc_info=True)
                await asyncio.sleep(reconnect_interval)

        logger.info("MQTT bus stopped")

    async def _dispatch(self, message):
        topic = str(message.topic)
        self.stats['received'] += 1
        for pattern, handler in self._handlers:
            if not message.topic.matches(pattern):
                continue
            try:
                await handler(topic, message.payload)
            except Exception as e:
                self.stats['handler_errors'] += 1
                logger.error(f"Handler for {pattern} failed on {topic}: {e}", exc_info=True)

    async def publish_json(self, topic: str, payload: dict) -> bool:
        """
        Publish a JSON document at QoS 1.

        Returns True once the broker accepted the message, False when the bus
        is disconnected, the publish failed, or it timed out.
        """
        client = self._client
        if client is None:
            self.stats['publish_failures'] += 1
            logger.error(f"MQTT not connected, dropping publish to {topic}")
            return False

        try:
            body = json.dumps(payload)
            await asyncio.wait_for(
                client.publish(topic, payload=body, qos=1),
                timeout=self.settings.publish_timeout_s,
            )
        except asyncio.TimeoutError:
            self.stats['publish_failures'] += 1
            logger.error(f"MQTT publish to {topic} timed out after {self.settings.publish_timeout_s}s")
            return False
        except (aiomqtt.MqttError, TypeError, ValueError) as e:
            self.stats['publish_failures'] += 1
            logger.error(f"MQTT publish to {topic} failed: {e}")
            return False

        self.stats['published'] += 1
        logger.info(f"Published to {topic}")
        return True

    async def close(self):
        """Stop the connection loop and wait for it to exit"""
        self._stopping.set()
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        self._client = None
