"""Mesh VPN coordination core: keys, addresses, wire encoding, routes, registration and map polling."""

__version__ = "0.1.0"

__all__ = [
    "addresses",
    "keys",
    "models",
    "poll",
    "registration",
    "routes",
    "stream",
    "swagger",
    "wire",
]