# parksense_gateway/messaging/mqtt_bridge.py
import asyncio
import json
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional

import paho.mqtt.client as mqtt

from ..core.models import DeviceLinkState, ParkingSession, SlotSnapshot

logger = logging.getLogger(__name__)

CommandHandler = Callable[[str, Optional[str], Dict[str, Any]], Awaitable[Dict[str, Any]]]


class MQTTBridge:
    """
    MQTT side of the gateway: status out, control commands in

    Topics (prefix defaults to "parksense"):
      <prefix>/slot/<name>/status       slot snapshot        (published)
      <prefix>/session/<name>           recorded session     (published)
      <prefix>/device/<id>/status       link state           (published)
      <prefix>/slot/<name>/command      ping/enable/disable/read
      <prefix>/device/command           servo/lcd/read_dist
      <prefix>/admin/command            add_slot/remove_last_slot/reset_slots/vacate_all
    Each command gets a reply on the same topic with /response in place of /command.

    paho runs its callbacks on its own network thread; work is handed to the
    asyncio loop with call_soon_threadsafe / run_coroutine_threadsafe.
    """

    def __init__(self, config: Dict[str, Any]):
        self.config = config
        self.broker = config.get('mqtt_broker', 'localhost')
        self.port = config.get('mqtt_port', 1883)
        self.topic_prefix = config.get('mqtt_topic_prefix', 'parksense')

        self.client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=f"parksense-gateway-{int(time.time())}",
        )
        username = config.get('mqtt_username')
        password = config.get('mqtt_password')
        if username and password:
            self.client.username_pw_set(username, password)

        self.client.on_connect = self._on_connect
        self.client.on_disconnect = self._on_disconnect
        self.client.on_message = self._on_message

        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self.connection_event: Optional[asyncio.Event] = None
        self.command_handler: Optional[CommandHandler] = None
        self.is_connected = False

    def set_command_handler(self, handler: CommandHandler):
        """Set the coroutine that executes incoming commands"""
        self.command_handler = handler

    async def connect(self, timeout: float = 10.0) -> bool:
        """Connect to the broker and subscribe to command topics"""
        self.loop = asyncio.get_running_loop()
        self.connection_event = asyncio.Event()
        try:
            logger.info(f"Connecting to MQTT broker at {self.broker}:{self.port}")
            await self.loop.run_in_executor(None, self.client.connect, self.broker, self.port, 60)
            self.client.loop_start()
            await asyncio.wait_for(self.connection_event.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            logger.error("Timeout waiting for MQTT connection")
            self.client.loop_stop()
            return False
        except OSError as e:
            logger.error(f"Failed to connect to MQTT broker: {e}")
            return False

    async def disconnect(self):
        """Disconnect from the broker"""
        if self.loop is None:
            return
        self.client.disconnect()
        self.client.loop_stop()
        self.is_connected = False
        logger.info("Disconnected from MQTT broker")

    def publish(self, topic: str, payload: Dict[str, Any], qos: int = 1, retain: bool = False) -> bool:
        """Publish a JSON payload under the topic prefix"""
        if not self.is_connected:
            logger.debug(f"MQTT not connected, dropping publish to {topic}")
            return False
        try:
            message = json.dumps(payload, default=str)
            info = self.client.publish(f"{self.topic_prefix}/{topic}", message, qos=qos, retain=retain)
            if info.rc != mqtt.MQTT_ERR_SUCCESS:
                logger.error(f"Failed to publish to {topic} (rc={info.rc})")
                return False
            return True
        except (ValueError, TypeError) as e:
            logger.error(f"Exception while publishing to {topic}: {e}")
            return False

    def publish_slot_status(self, snapshot: SlotSnapshot) -> bool:
        return self.publish(f"slot/{snapshot.name}/status", snapshot.to_payload(), retain=True)

    def publish_session(self, session: ParkingSession) -> bool:
        return self.publish(f"session/{session.slot_name}", session.to_row())

    def publish_device_status(self, state: DeviceLinkState) -> bool:
        return self.publish(f"device/{state.device_id}/status", state.to_row(), retain=True)

    # ------------------------------------------------------------------
    # paho callbacks (network thread)
    # ------------------------------------------------------------------

    def _on_connect(self, client, userdata, flags, reason_code, properties):
        if reason_code.is_failure:
            logger.error(f"Failed to connect to MQTT broker: {reason_code}")
            self.is_connected = False
            return

        logger.info("Connected to MQTT broker")
        self.is_connected = True
        for topic in (f"{self.topic_prefix}/slot/+/command",
                      f"{self.topic_prefix}/device/command",
                      f"{self.topic_prefix}/admin/command"):
            client.subscribe(topic, qos=1)
            logger.info(f"Subscribed to command topic: {topic}")
        if self.loop and self.connection_event:
            self.loop.call_soon_threadsafe(self.connection_event.set)

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties):
        logger.warning(f"Disconnected from MQTT broker: {reason_code}")
        self.is_connected = False
        if self.loop and self.connection_event:
            self.loop.call_soon_threadsafe(self.connection_event.clear)

    def _on_message(self, client, userdata, msg):
        route = self.parse_command_topic(msg.topic)
        if route is None:
            logger.debug(f"Ignoring message on non-command topic: {msg.topic}")
            return

        scope, slot_name = route
        response_topic = msg.topic[len(self.topic_prefix) + 1:-len("command")] + "response"
        try:
            payload = json.loads(msg.payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.error(f"Invalid JSON in command message on {msg.topic}: {e}")
            self.publish(response_topic, {"success": False, "error": f"Invalid JSON: {e}"})
            return

        if self.command_handler is None or self.loop is None:
            logger.warning(f"No command handler registered, dropping command on {msg.topic}")
            return

        logger.info(f"Command received: {scope} {slot_name or ''} {payload}")
        asyncio.run_coroutine_threadsafe(self._dispatch(scope, slot_name, payload, response_topic), self.loop)

    def parse_command_topic(self, topic: str):
        """(scope, slot_name) for a command topic, None otherwise"""
        # The prefix may itself contain '/', e.g. "site1/parksense"
        prefix = f"{self.topic_prefix}/"
        if not topic.startswith(prefix):
            return None
        parts = [self.topic_prefix] + topic[len(prefix):].split('/')
        if parts[-1] != 'command':
            return None
        if len(parts) == 4 and parts[1] == 'slot':
            return 'slot', parts[2]
        if len(parts) == 3 and parts[1] in ('device', 'admin'):
            return parts[1], None
        return None

    async def _dispatch(self, scope: str, slot_name: Optional[str], payload: Dict[str, Any], response_topic: str):
        try:
            result = await self.command_handler(scope, slot_name, payload)
        except Exception as e:
            logger.error(f"Error executing {scope} command: {e}")
            result = {"success": False, "error": str(e)}
        self.publish(response_topic, result)
