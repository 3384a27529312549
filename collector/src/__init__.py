"""
Power collector edge daemon.

Samples a PZEM-004T power meter over a serial link, decodes its Modbus-style
frames, and forwards readings to the power-monitor ingestion API, buffering
them in a local SQLite queue whenever the network is unavailable.

CHANGELOG:
- 2026-10-12: Initial creation (STORY-101)

TODO:
- None
"""
