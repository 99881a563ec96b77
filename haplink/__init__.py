"""Building blocks for HomeKit Accessory Protocol accessories over IP: TLV8, storage,
encrypted sessions, request handlers and an asyncio accessory server."""

__version__ = "0.1.0"