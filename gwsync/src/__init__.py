"""
Gateway discovery and configuration synchronization engine.

Finds USR N720/N510 energy-metering gateways on the local network, compiles a
declarative meter list into the gateway's native Modbus/MQTT configuration,
pushes it, and waits out the gateway reboot to confirm the change took effect.

CHANGELOG:
- 2026-10-19: Initial creation (STORY-101)

TODO:
- None
"""
