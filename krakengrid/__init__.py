"""
krakengrid: grid-assembled multi-leg order client for the Kraken WebSocket v2 API.
"""

__version__ = "0.1.0"
