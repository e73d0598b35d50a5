"""SocketCAN tools: CAN gateway rules, sequence testing, sniffing and ISO-TP inspection."""

__version__ = "0.1.0"