# parksense_gateway/main.py
import asyncio
import logging
import os
import sys

from dotenv import load_dotenv

from .config.settings import Settings
from .core.billing import create_billing_policy
from .core.connection_factory import ConnectionFactory
from .core.gateway import ParkingGateway
from .core.occupancy import DetectionPolicy, OccupancySource, OccupancyStateMachine, OvertimeSource
from .core.port_discovery import PortDiscovery
from .core.session_recorder import SessionRecorder
from .core.slot_control import SlotControl
from .storage.factory import RepositoryFactory

logger = logging.getLogger(__name__)


def configure_logging(level: str):
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[logging.StreamHandler(sys.stdout)]
    )


async def main(settings: Settings):
    """Wire the gateway together and run it until interrupted"""
    logger.info("🚀 Starting ParkSense gateway")

    factory = ConnectionFactory()
    logger.info(f"📡 Available connections: {factory.get_available_connections()}")

    if settings.CONNECTION_TYPE == "serial":
        discovery = PortDiscovery()
        ports = discovery.scan()
        if ports and settings.SERIAL_PORT not in [p.device for p in ports]:
            logger.warning(f"⚠️ {settings.SERIAL_PORT} not among detected ports; Bluetooth candidates: "
                           f"{[p.device for p in discovery.bluetooth_ports()]}")

    connection = factory.create_connection(settings.CONNECTION_TYPE, settings.DEVICE_ID, settings.connection_config())
    processor = factory.create_processor("text", {"max_line_length": settings.MAX_LINE_LENGTH})
    if connection is None or processor is None:
        logger.error("❌ Could not build the device link, exiting")
        return

    repository = RepositoryFactory.create_repository(
        settings.REPOSITORY_TYPE,
        supabase_url=settings.SUPABASE_URL,
        supabase_key=settings.SUPABASE_KEY,
        poll_interval=settings.SUBSCRIPTION_POLL_INTERVAL,
    )
    await repository.initialize()

    slot_control = SlotControl(repository, settings.DEFAULT_SLOT_COUNT, settings.DEFAULT_ALLOWED_MINUTES)
    if not await repository.get_slots():
        logger.info("No slots configured, creating the default set")
        await slot_control.reset_slots()

    billing = create_billing_policy(
        settings.BILLING_POLICY,
        base_fee=settings.BASE_FEE,
        overtime_fee=settings.OVERTIME_FEE,
        rate_per_hour=settings.RATE_PER_HOUR,
        overtime_rate_per_hour=settings.OVERTIME_RATE_PER_HOUR,
        threshold_minutes=settings.OVERTIME_THRESHOLD_MINUTES,
    )
    machine = OccupancyStateMachine(DetectionPolicy(
        occupancy_source=OccupancySource(settings.OCCUPANCY_SOURCE),
        overtime_source=OvertimeSource(settings.OVERTIME_SOURCE),
        sensor_threshold=settings.SENSOR_THRESHOLD,
    ))
    recorder = SessionRecorder(
        repository,
        billing,
        slot_lookup=machine.snapshot,
        retry_attempts=settings.SESSION_RETRY_ATTEMPTS,
        retry_delay=settings.SESSION_RETRY_DELAY,
    )

    bridge = None
    if settings.MQTT_ENABLED:
        from .messaging.mqtt_bridge import MQTTBridge
        bridge = MQTTBridge(settings.mqtt_config())
        if await bridge.connect():
            recorder.on_recorded = bridge.publish_session
        else:
            logger.warning("⚠️ MQTT unavailable, continuing without status publishing")
            bridge = None

    gateway = ParkingGateway(
        settings.DEVICE_ID,
        connection,
        processor,
        machine,
        recorder,
        repository,
        slot_control=slot_control,
        bridge=bridge,
        persist_sensor_readings=settings.PERSIST_SENSOR_READINGS,
        overtime_sweep_interval=settings.OVERTIME_SWEEP_INTERVAL,
        command_write_timeout=settings.COMMAND_WRITE_TIMEOUT,
    )
    if bridge:
        bridge.set_command_handler(gateway.handle_control_command)

    try:
        logger.info(f"🟢 Gateway running ({settings.CONNECTION_TYPE} link, {settings.BILLING_POLICY} billing, "
                    f"prices in {settings.CURRENCY}). Press Ctrl+C to stop")
        await gateway.run()
    finally:
        if bridge:
            await bridge.disconnect()
        await repository.close()


def run():
    """Console script entry point"""
    load_dotenv()
    configure_logging(os.getenv('LOG_LEVEL', 'INFO').upper())
    settings = Settings()
    logging.getLogger().setLevel(settings.LOG_LEVEL.upper())
    try:
        asyncio.run(main(settings))
    except KeyboardInterrupt:
        logger.info("🛑 Gateway shutdown by user")


if __name__ == "__main__":
    run()
