"""
RMS - a RAM-cached Minecraft server supervisor.

Runs the server process, mirrors its world between a live directory and a
durable backup, optionally backs the live directory with a RAM disk, and
restarts the server automatically before the RAM disk fills up.
"""

__version__ = "0.1.0"
