# Copyright (c) SVID-Rotator Contributors. All rights reserved.
# Licensed under the MIT License.
"""
Reference services

A ping/pong pair that talk to each other over mutual TLS using the
rotating SVID material.
"""

from . import ping, pong

SERVICES = {
    "ping": ping,
    "pong": pong,
}

__all__ = ["SERVICES", "ping", "pong"]
